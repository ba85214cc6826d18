"""Boost checkout: buy upsells and/or a closing-date extension for a live vacancy.

The plan is validated against one ledger state and charged as a single
aggregate spend through the serialized debit path; the vacancy is updated
afterwards in one write that also flags it for CMS sync.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from beanie import PydanticObjectId
from beanie.operators import AddToSet, Set
from pydantic import BaseModel

from app.core.audit import log_event
from app.core.exceptions import EligibilityError, NotFoundError, ValidationFailedError
from app.core.logging import get_logger
from app.core.security import generate_checkout_id
from app.models.product import Product
from app.models.transaction import Transaction
from app.models.vacancy import BOOSTABLE_STATUSES, Vacancy
from app.services import catalog, ledger
from app.services import credits as credits_service
from app.services import vacancies as vacancies_service
from app.services.credits import LedgerState
from app.services.ledger import Balance

log = get_logger(__name__)

# rounds of the republish-or-plain write before the vacancy counts as gone
WRITE_ATTEMPTS = 3


class BoostResult(BaseModel):
    checkout_id: str | None
    transaction_id: str
    credits_spent: int
    balance: Balance
    vacancy: dict[str, Any]
    replayed: bool = False


@dataclass
class BoostPlan:
    products: list
    extension: Any
    new_closing_date: date | None
    cost: int

    @property
    def product_ids(self) -> list[str]:
        return [str(p.id) for p in self.products]


def plan_boost(
    products: list,
    vacancy,
    transactions: list,
    upsell_ids: list[str],
    new_closing_date: date | None = None,
    now: datetime | None = None,
) -> BoostPlan:
    """Validate a boost selection and price it. Raises on the first rule it breaks."""
    now = now or datetime.utcnow()
    if not upsell_ids:
        raise ValidationFailedError("Select at least one option", details={"upsell_ids": []})
    duplicates = sorted({pid for pid in upsell_ids if upsell_ids.count(pid) > 1})
    if duplicates:
        raise ValidationFailedError("Duplicate options selected", details={"product_ids": duplicates})
    if vacancy.status not in BOOSTABLE_STATUSES:
        raise EligibilityError(
            "Only published or expired vacancies can be boosted",
            reason="vacancy_status",
            details={"status": vacancy.status},
        )

    by_id = {str(p.id): p for p in products}
    unknown = [pid for pid in upsell_ids if pid not in by_id]
    if unknown:
        raise ValidationFailedError("Unknown product", details={"product_ids": unknown})
    selected = [by_id[pid] for pid in upsell_ids]

    extensions = [p for p in selected if p.repeat_mode == "until_max"]
    if len(extensions) > 1:
        raise ValidationFailedError(
            "Only one closing-date extension per checkout",
            details={"product_ids": [str(p.id) for p in extensions]},
        )
    extension = extensions[0] if extensions else None
    if new_closing_date is not None and extension is None:
        raise ValidationFailedError("A new closing date requires the extension option", details={"new_closing_date": new_closing_date.isoformat()})
    if vacancy.status == "verlopen" and extension is None:
        raise EligibilityError("An expired vacancy needs a new closing date", reason="extension_required")
    if extension is not None and new_closing_date is None:
        raise ValidationFailedError("Pick a new closing date", details={"product_id": str(extension.id)})

    package = catalog.find_package(products, vacancy)
    for product in selected:
        decision = catalog.evaluate_upsell(product, vacancy, package, transactions, now)
        if not decision.eligible:
            raise EligibilityError(
                f"{product.display_name} cannot be purchased for this vacancy",
                reason=decision.reason,
                product_id=decision.product_id,
            )
        if product is extension and not decision.window.contains(new_closing_date):
            raise EligibilityError(
                "Closing date is outside the allowed range",
                reason="date_out_of_range",
                product_id=decision.product_id,
                details={
                    "min_date": decision.window.min_date.isoformat(),
                    "max_date": decision.window.max_date.isoformat(),
                    "requested": new_closing_date.isoformat(),
                },
            )

    return BoostPlan(
        products=selected,
        extension=extension,
        new_closing_date=new_closing_date,
        cost=sum(p.credits for p in selected),
    )


def boost_operators(plan: BoostPlan, checkout_id: str, now: datetime, republish: bool = False) -> list:
    """Update operators for a paid boost. Arrays grow with $addToSet so concurrent boosts merge."""
    upsells = [str(p.id) for p in plan.products if p is not plan.extension]
    tags = list(dict.fromkeys(p.grants_tag for p in plan.products if p.grants_tag))
    fields = {Vacancy.needs_sync: True, Vacancy.updated_at: now}
    if plan.extension is not None:
        fields[Vacancy.closing_date] = vacancies_service.midnight(plan.new_closing_date)
    if republish:
        fields[Vacancy.status] = "gepubliceerd"
        fields[Vacancy.last_published_at] = now
    additions = {Vacancy.applied_checkout_ids: {"$each": [checkout_id]}}
    if upsells:
        additions[Vacancy.selected_upsells] = {"$each": upsells}
    if tags:
        additions[Vacancy.tags] = {"$each": tags}
    return [Set(fields), AddToSet(additions)]


async def apply_boost(vacancy_id: PydanticObjectId, plan: BoostPlan, checkout_id: str, now: datetime) -> None:
    """Write a paid boost to the vacancy.

    An extension republishes the vacancy only if it is still verlopen when the
    write lands, so a concurrent expiry sweep cannot leave it expired with a
    future closing date.
    """
    operators = boost_operators(plan, checkout_id, now)
    if plan.extension is None:
        if not await vacancies_service.update_where(vacancy_id, [], *operators):
            raise NotFoundError("Vacancy not found")
        return
    republished = boost_operators(plan, checkout_id, now, republish=True)
    for _ in range(WRITE_ATTEMPTS):
        if await vacancies_service.update_where(vacancy_id, [Vacancy.status == "verlopen"], *republished):
            return
        if await vacancies_service.update_where(vacancy_id, [Vacancy.status != "verlopen"], *operators):
            return
    raise NotFoundError("Vacancy not found")


class _AlreadyCharged(Exception):
    """Raised from inside a debit build when the Idempotency-Key already has a live spend."""

    def __init__(self, previous: Transaction):
        self.previous = previous
        super().__init__(str(previous.id))


async def _replay(employer_id: PydanticObjectId, vacancy_id: str, previous: Transaction, now: datetime) -> BoostResult:
    if previous.vacancy_id != vacancy_id:
        raise ValidationFailedError(
            "Idempotency-Key was already used for another vacancy",
            details={"idempotency_key": previous.idempotency_key, "vacancy_id": previous.vacancy_id},
        )
    vacancy = await vacancies_service.get_owned_vacancy(vacancy_id, employer_id)
    log.info("boost_replayed", vacancy_id=vacancy_id, transaction_id=str(previous.id))
    return BoostResult(
        checkout_id=previous.checkout_id,
        transaction_id=str(previous.id),
        credits_spent=previous.credits,
        balance=await credits_service.get_balance(employer_id, now),
        vacancy=vacancies_service.vacancy_snapshot(vacancy),
        replayed=True,
    )


async def boost_vacancy(
    employer_id: PydanticObjectId,
    vacancy_id: str,
    upsell_ids: list[str],
    new_closing_date: date | None = None,
    user_id: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> BoostResult:
    now = now or datetime.utcnow()
    if idempotency_key:
        previous = await credits_service.find_by_idempotency_key(employer_id, idempotency_key)
        if previous is not None:
            return await _replay(employer_id, vacancy_id, previous, now)

    checkout_id = generate_checkout_id()
    planned: dict[str, Any] = {}

    async def build(state: LedgerState) -> Transaction:
        if idempotency_key:
            # a concurrent request with the same key may have staged its spend since the check above
            for earlier in state.transactions:
                if earlier.idempotency_key == idempotency_key and earlier.status != "failed":
                    raise _AlreadyCharged(earlier)
        vacancy = await vacancies_service.get_owned_vacancy(vacancy_id, employer_id)
        products = await Product.find(Product.is_active == True).to_list()  # noqa: E712
        plan = plan_boost(products, vacancy, state.transactions, list(upsell_ids), new_closing_date, now)
        ledger.require_affordable(state.balance, plan.cost)
        planned.update(vacancy=vacancy, plan=plan)
        return Transaction(
            employer_id=employer_id,
            user_id=user_id,
            vacancy_id=vacancy_id,
            type="spend",
            credits=plan.cost,
            product_ids=plan.product_ids,
            context="boost",
            checkout_id=checkout_id,
            idempotency_key=idempotency_key,
            created_at=now,
        )

    try:
        state, tx = await credits_service.debit(employer_id, build, now)
    except _AlreadyCharged as charged:
        return await _replay(employer_id, vacancy_id, charged.previous, now)
    vacancy: Vacancy = planned["vacancy"]
    plan: BoostPlan = planned["plan"]
    await credits_service.finalize_debit(tx, apply_boost(vacancy.id, plan, checkout_id, now))

    balance = ledger.compute_balance([*state.transactions, tx], now=now, employer_id=str(employer_id))
    vacancy = await Vacancy.get(vacancy.id)
    log.info(
        "boost_applied",
        vacancy_id=vacancy_id,
        credits=plan.cost,
        product_ids=plan.product_ids,
        checkout_id=checkout_id,
    )
    await log_event(
        "vacancy_boost",
        employer_id=str(employer_id),
        actor_user_id=user_id,
        vacancy_id=vacancy_id,
        payload={
            "product_ids": plan.product_ids,
            "credits_spent": plan.cost,
            "new_closing_date": new_closing_date.isoformat() if new_closing_date else None,
            "transaction_id": str(tx.id),
        },
    )
    return BoostResult(
        checkout_id=checkout_id,
        transaction_id=str(tx.id),
        credits_spent=plan.cost,
        balance=balance,
        vacancy=vacancies_service.vacancy_snapshot(vacancy),
    )


async def boost_options(employer_id: PydanticObjectId, vacancy_id: str, now: datetime | None = None) -> dict[str, Any]:
    """What the boost modal shows: purchasable options, balance and whether an extension is mandatory."""
    now = now or datetime.utcnow()
    vacancy = await vacancies_service.get_owned_vacancy(vacancy_id, employer_id)
    state = await credits_service.load_state(employer_id, now)
    products = await Product.find(Product.is_active == True).to_list()  # noqa: E712
    options = catalog.resolve_available_upsells(products, vacancy, state.transactions, now)
    return {
        "vacancy": vacancies_service.vacancy_snapshot(vacancy),
        "boostable": vacancy.status in BOOSTABLE_STATUSES,
        "extension_required": vacancy.status == "verlopen",
        "options": [o.model_dump(mode="json") for o in options],
        "balance": state.balance.model_dump(mode="json"),
        "price_display_mode": ledger.price_display_mode(state.balance.total_purchased),
    }
