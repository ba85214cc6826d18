import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
from app.models.audit_log import AuditLog
from app.models.employer import Employer
from app.models.failed_job import FailedJob
from app.models.product import Product
from app.models.transaction import Transaction
from app.models.user import User
from app.models.vacancy import Vacancy
from app.models.wallet import Wallet

DOCUMENT_MODELS = [
    Employer,
    User,
    Wallet,
    Transaction,
    Product,
    Vacancy,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(database=None) -> None:
    """Bind Beanie documents. Pass `database` to reuse an existing (or in-memory) database handle."""
    if database is None:
        settings = get_settings()
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
        database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
