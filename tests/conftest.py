import os
from datetime import datetime
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Use test DB
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "werkgeversportaal_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")


@pytest_asyncio.fixture(autouse=True)
async def db():
    """Fresh in-memory database per test; Beanie documents are bound to it."""
    from mongomock_motor import AsyncMongoMockClient

    from app.db.init import init_db
    database = AsyncMongoMockClient()["werkgeversportaal_test"]
    await init_db(database)
    yield database


@pytest_asyncio.fixture
async def employer():
    from app.models.employer import Employer
    e = Employer(company_name="Bakkerij de Vries", display_name="De Vries", kvk="12345678", status="active")
    await e.insert()
    return e


@pytest_asyncio.fixture
async def user(employer):
    from app.models.user import User
    u = User(email="jan@devries.nl", name="Jan", employer_id=employer.id)
    await u.insert()
    return u


@pytest_asyncio.fixture
async def admin_user():
    from app.models.user import User
    u = User(email="admin@portal.nl", name="Admin", role="admin")
    await u.insert()
    return u


@pytest_asyncio.fixture
async def products():
    """Small catalog: two packages, one bundle, one upsell per repeat mode."""
    from app.models.product import Product
    items = {
        "basic": Product(display_name="Basis", type="vacancy_package", credits=10, duration_days=30,
                         availability=["add-vacancy"], sort_order=1),
        "premium": Product(display_name="Premium", type="vacancy_package", credits=40, duration_days=365,
                           availability=["add-vacancy"], sort_order=2),
        "bundle": Product(display_name="20 credits", type="credit_bundle", credits=20, price=200.0,
                          validity_months=12),
        "highlight": Product(display_name="Uitgelicht", type="upsell", credits=5, repeat_mode="once",
                             availability=["add-vacancy", "boost-option"], grants_tag="UITGELICHT", sort_order=3),
        "top": Product(display_name="Top van de lijst", type="upsell", credits=5, repeat_mode="renewable",
                       duration_days=7, availability=["boost-option"], sort_order=2),
        "social": Product(display_name="Social post", type="upsell", credits=2, repeat_mode="unlimited",
                          availability=["boost-option"], sort_order=4),
        "extension": Product(display_name="Verlengen", type="upsell", credits=10, repeat_mode="until_max",
                             availability=["boost-option"], sort_order=1),
        "hidden": Product(display_name="Alleen bij plaatsen", type="upsell", credits=3, repeat_mode="once",
                          availability=["add-vacancy"], sort_order=9),
    }
    for p in items.values():
        await p.insert()
    items["basic"].included_upsells = [str(items["social"].id)]
    await items["basic"].save()
    return items


@pytest.fixture
def pid(products):
    """Product id by catalog key."""
    return lambda key: str(products[key].id)


@pytest_asyncio.fixture
async def grant(employer):
    """Insert a paid credit purchase for the employer."""
    from app.models.transaction import Transaction

    async def _grant(credits: int, created_at: datetime = datetime(2026, 1, 1), expires_at: datetime | None = datetime(2099, 1, 1)):
        tx = Transaction(
            employer_id=employer.id,
            type="purchase",
            status="paid",
            credits=credits,
            expires_at=expires_at,
            context="dashboard",
            created_at=created_at,
        )
        await tx.insert()
        return tx

    return _grant


@pytest_asyncio.fixture
async def make_vacancy(employer, products):
    """Insert a vacancy; defaults to a published basic-package vacancy."""
    from app.models.vacancy import Vacancy

    async def _make(**overrides):
        fields = dict(
            employer_id=employer.id,
            title="Broodbakker",
            intro_txt="Vroege vogel?",
            description="Wij zoeken een bakker.",
            location="Utrecht",
            apply_url="https://devries.nl/vacatures",
            status="gepubliceerd",
            package_id=str(products["basic"].id),
            first_published_at=datetime(2026, 1, 1),
            last_published_at=datetime(2026, 1, 1),
            closing_date=datetime(2026, 1, 31),
        )
        fields.update(overrides)
        v = Vacancy(**fields)
        await v.insert()
        return v

    return _make


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


def login(client: AsyncClient, user) -> AsyncClient:
    from app.core.security import create_session_cookie
    from app.deps import SESSION_COOKIE_NAME
    client.cookies.set(SESSION_COOKIE_NAME, create_session_cookie({"user_id": str(user.id), "session_version": user.session_version}))
    return client


@pytest_asyncio.fixture
async def auth_client(client, user) -> AsyncClient:
    return login(client, user)


@pytest_asyncio.fixture
async def admin_client(admin_user) -> AsyncGenerator[AsyncClient, None]:
    """Separate client so employer and admin sessions can be used side by side."""
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield login(ac, admin_user)
