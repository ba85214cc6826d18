"""Vacancy lifecycle: concept -> submitted (paid) -> published -> expired/depublished."""

from datetime import datetime, time, timedelta
from typing import Any

from beanie import PydanticObjectId
from beanie.operators import AddToSet, In, Set

from app.core.audit import log_event
from app.core.exceptions import EligibilityError, NotFoundError, ValidationFailedError
from app.core.logging import get_logger
from app.core.security import generate_checkout_id
from app.models.product import Product
from app.models.transaction import Transaction
from app.models.vacancy import TAG_NEW, Vacancy
from app.services import catalog, ledger
from app.services import credits as credits_service
from app.services.credits import LedgerState

log = get_logger(__name__)

CONTENT_FIELDS = (
    "title",
    "intro_txt",
    "description",
    "location",
    "input_type",
    "apply_url",
    "application_email",
    "show_apply_form",
)


def midnight(day) -> datetime:
    return datetime.combine(day, time.min)


async def update_where(vacancy_id: PydanticObjectId, conditions: list, *operators) -> bool:
    """Apply update operators to the vacancy only while `conditions` still hold at write time.

    Returns False when no document matched.
    """
    result = await Vacancy.find_one(Vacancy.id == vacancy_id, *conditions).update(*operators)
    return result is not None and getattr(result, "matched_count", 0) == 1


def vacancy_snapshot(vacancy: Vacancy) -> dict[str, Any]:
    return {
        "id": str(vacancy.id),
        "employer_id": str(vacancy.employer_id),
        "title": vacancy.title,
        "status": vacancy.status,
        "input_type": vacancy.input_type,
        "package_id": vacancy.package_id,
        "selected_upsells": list(vacancy.selected_upsells),
        "tags": list(vacancy.tags),
        "closing_date": vacancy.closing_date.date().isoformat() if vacancy.closing_date else None,
        "first_published_at": vacancy.first_published_at.isoformat() if vacancy.first_published_at else None,
        "last_published_at": vacancy.last_published_at.isoformat() if vacancy.last_published_at else None,
        "submitted_at": vacancy.submitted_at.isoformat() if vacancy.submitted_at else None,
        "needs_sync": vacancy.needs_sync,
        "created_at": vacancy.created_at.isoformat(),
        "updated_at": vacancy.updated_at.isoformat(),
    }


def missing_fields(vacancy: Vacancy) -> list[str]:
    """Fields that must be filled before the vacancy can be submitted."""
    if vacancy.input_type == "we_do_it_for_you":
        required = ["description"]
    else:
        required = ["title", "intro_txt", "description", "location"]
    missing = [name for name in required if not (getattr(vacancy, name) or "").strip()]
    if vacancy.show_apply_form:
        if not vacancy.application_email.strip():
            missing.append("application_email")
    elif not vacancy.apply_url.strip():
        missing.append("apply_url")
    return missing


async def get_owned_vacancy(vacancy_id: str, employer_id: PydanticObjectId) -> Vacancy:
    if not PydanticObjectId.is_valid(vacancy_id):
        raise NotFoundError("Vacancy not found")
    vacancy = await Vacancy.get(PydanticObjectId(vacancy_id))
    if not vacancy or vacancy.employer_id != employer_id:
        raise NotFoundError("Vacancy not found")
    return vacancy


async def list_vacancies(employer_id: PydanticObjectId, status: str | None = None) -> list[Vacancy]:
    query = Vacancy.find(Vacancy.employer_id == employer_id)
    if status:
        query = query.find(Vacancy.status == status)
    return await query.sort(-Vacancy.created_at).to_list()


async def _check_selection(package_id: str | None, upsell_ids: list[str]) -> None:
    wanted = [pid for pid in [package_id, *upsell_ids] if pid]
    if not wanted:
        return
    invalid = [pid for pid in wanted if not PydanticObjectId.is_valid(pid)]
    if invalid:
        raise ValidationFailedError("Unknown product", details={"product_ids": invalid})
    products = await Product.find(In(Product.id, [PydanticObjectId(pid) for pid in wanted])).to_list()
    by_id = {str(p.id): p for p in products}
    unknown = [pid for pid in wanted if pid not in by_id or not by_id[pid].is_active]
    if unknown:
        raise ValidationFailedError("Unknown product", details={"product_ids": unknown})
    if package_id and by_id[package_id].type != "vacancy_package":
        raise ValidationFailedError("Not a vacancy package", details={"product_id": package_id})
    not_upsells = [pid for pid in upsell_ids if by_id[pid].type != "upsell"]
    if not_upsells:
        raise ValidationFailedError("Not an upsell", details={"product_ids": not_upsells})


async def create_vacancy(employer_id: PydanticObjectId, data: dict[str, Any], user_id: str | None = None) -> Vacancy:
    fields = {k: v for k, v in data.items() if k in CONTENT_FIELDS}
    package_id = data.get("package_id")
    upsells = list(dict.fromkeys(data.get("selected_upsells") or []))
    await _check_selection(package_id, upsells)
    vacancy = Vacancy(employer_id=employer_id, package_id=package_id, selected_upsells=upsells, **fields)
    await vacancy.insert()
    await log_event("vacancy_created", employer_id=str(employer_id), actor_user_id=user_id, vacancy_id=str(vacancy.id))
    return vacancy


async def update_vacancy(
    vacancy_id: str,
    employer_id: PydanticObjectId,
    data: dict[str, Any],
    user_id: str | None = None,
) -> Vacancy:
    """Edit a concept. Submitted vacancies are changed through boosts only."""
    vacancy = await get_owned_vacancy(vacancy_id, employer_id)
    if vacancy.status != "concept":
        raise EligibilityError(
            "Only concept vacancies can be edited",
            reason="vacancy_status",
            details={"status": vacancy.status},
        )
    update: dict[str, Any] = {k: v for k, v in data.items() if k in CONTENT_FIELDS}
    if "package_id" in data or "selected_upsells" in data:
        package_id = data.get("package_id", vacancy.package_id)
        upsells = list(dict.fromkeys(data.get("selected_upsells", vacancy.selected_upsells) or []))
        await _check_selection(package_id, upsells)
        update["package_id"] = package_id
        update["selected_upsells"] = upsells
    if not update:
        return vacancy
    update["updated_at"] = datetime.utcnow()
    await vacancy.set(update)
    await log_event(
        "vacancy_updated",
        employer_id=str(employer_id),
        actor_user_id=user_id,
        vacancy_id=vacancy_id,
        payload={"fields": sorted(k for k in update if k != "updated_at")},
    )
    return vacancy


async def _mark_submitted(vacancy_id: PydanticObjectId, checkout_id: str, now: datetime) -> None:
    submitted = await update_where(
        vacancy_id,
        [Vacancy.status == "concept"],
        Set({Vacancy.status: "wacht_op_goedkeuring", Vacancy.submitted_at: now, Vacancy.updated_at: now}),
        AddToSet({Vacancy.applied_checkout_ids: checkout_id}),
    )
    if not submitted:
        raise EligibilityError("Vacancy left concept during checkout", reason="vacancy_status")


async def submit_vacancy(
    vacancy_id: str,
    employer_id: PydanticObjectId,
    user_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Charge package + selected upsells and queue the vacancy for approval."""
    now = now or datetime.utcnow()
    checkout_id = generate_checkout_id()

    async def build(state: LedgerState) -> Transaction:
        vacancy = await get_owned_vacancy(vacancy_id, employer_id)
        if vacancy.status != "concept":
            raise EligibilityError(
                "Only concept vacancies can be submitted",
                reason="vacancy_status",
                details={"status": vacancy.status},
            )
        if any(
            tx.vacancy_id == vacancy_id and tx.context == "vacancy" and tx.status != "failed"
            for tx in state.transactions
        ):
            # a concurrent submit already holds the serialized debit
            raise EligibilityError("Vacancy was already submitted", reason="vacancy_status")
        if not vacancy.package_id:
            raise ValidationFailedError("Select a package first", details={"fields": ["package_id"]})
        missing = missing_fields(vacancy)
        if missing:
            raise ValidationFailedError("Vacancy is incomplete", details={"fields": missing})
        await _check_selection(vacancy.package_id, vacancy.selected_upsells)
        package = await Product.get(PydanticObjectId(vacancy.package_id))
        upsells = await Product.find(
            In(Product.id, [PydanticObjectId(pid) for pid in vacancy.selected_upsells])
        ).to_list()
        cost = package.credits + sum(p.credits for p in upsells)
        ledger.require_affordable(state.balance, cost)
        product_ids = list(dict.fromkeys([str(package.id), *package.included_upsells, *vacancy.selected_upsells]))
        return Transaction(
            employer_id=employer_id,
            user_id=user_id,
            vacancy_id=vacancy_id,
            type="spend",
            credits=cost,
            product_ids=product_ids,
            context="vacancy",
            checkout_id=checkout_id,
            created_at=now,
        )

    state, tx = await credits_service.debit(employer_id, build, now)
    vacancy = await get_owned_vacancy(vacancy_id, employer_id)
    await credits_service.finalize_debit(tx, _mark_submitted(vacancy.id, checkout_id, now))
    balance = ledger.compute_balance([*state.transactions, tx], now=now, employer_id=str(employer_id))
    log.info("vacancy_submitted", vacancy_id=vacancy_id, credits=tx.credits, checkout_id=checkout_id)
    await log_event(
        "vacancy_submitted",
        employer_id=str(employer_id),
        actor_user_id=user_id,
        vacancy_id=vacancy_id,
        payload={"credits_spent": tx.credits, "product_ids": tx.product_ids, "transaction_id": str(tx.id)},
    )
    vacancy = await Vacancy.get(vacancy.id)
    return {
        "vacancy": vacancy_snapshot(vacancy),
        "balance": balance,
        "credits_spent": tx.credits,
        "transaction_id": str(tx.id),
        "checkout_id": checkout_id,
    }


async def approve_vacancy(vacancy_id: str, admin_user_id: str | None = None, now: datetime | None = None) -> Vacancy:
    """Publish a submitted vacancy. First publication fixes the extension window's anchor."""
    now = now or datetime.utcnow()
    vacancy = await Vacancy.get(PydanticObjectId(vacancy_id)) if PydanticObjectId.is_valid(vacancy_id) else None
    if not vacancy:
        raise NotFoundError("Vacancy not found")
    if vacancy.status != "wacht_op_goedkeuring":
        raise EligibilityError(
            "Only submitted vacancies can be approved",
            reason="vacancy_status",
            details={"status": vacancy.status},
        )
    package = None
    if vacancy.package_id and PydanticObjectId.is_valid(vacancy.package_id):
        package = await Product.get(PydanticObjectId(vacancy.package_id))
    closing_date = vacancy.closing_date or midnight(now.date() + timedelta(days=catalog.package_base_duration(package)))
    tags = list(vacancy.tags)
    if TAG_NEW not in tags:
        tags.append(TAG_NEW)
    await vacancy.set({
        Vacancy.status: "gepubliceerd",
        Vacancy.first_published_at: vacancy.first_published_at or now,
        Vacancy.last_published_at: now,
        Vacancy.closing_date: closing_date,
        Vacancy.tags: tags,
        Vacancy.needs_sync: True,
        Vacancy.updated_at: now,
    })
    log.info("vacancy_approved", vacancy_id=vacancy_id, closing_date=closing_date.date().isoformat())
    await log_event(
        "vacancy_approved",
        employer_id=str(vacancy.employer_id),
        actor_user_id=admin_user_id,
        vacancy_id=vacancy_id,
        source="admin",
    )
    return vacancy


async def depublish_vacancy(
    vacancy_id: str,
    employer_id: PydanticObjectId,
    user_id: str | None = None,
    now: datetime | None = None,
) -> Vacancy:
    now = now or datetime.utcnow()
    vacancy = await get_owned_vacancy(vacancy_id, employer_id)
    if vacancy.status != "gepubliceerd":
        raise EligibilityError(
            "Only published vacancies can be taken offline",
            reason="vacancy_status",
            details={"status": vacancy.status},
        )
    await vacancy.set({
        Vacancy.status: "gedepubliceerd",
        Vacancy.depublished_at: now,
        Vacancy.needs_sync: True,
        Vacancy.updated_at: now,
    })
    await log_event("vacancy_depublished", employer_id=str(employer_id), actor_user_id=user_id, vacancy_id=vacancy_id)
    return vacancy


async def republish_vacancy(
    vacancy_id: str,
    employer_id: PydanticObjectId,
    user_id: str | None = None,
    now: datetime | None = None,
) -> Vacancy:
    """Put a depublished vacancy back online. Expired ones need a boost with an extension instead."""
    now = now or datetime.utcnow()
    vacancy = await get_owned_vacancy(vacancy_id, employer_id)
    if vacancy.status != "gedepubliceerd":
        raise EligibilityError(
            "Only depublished vacancies can be republished",
            reason="vacancy_status",
            details={"status": vacancy.status},
        )
    if vacancy.closing_date is None or vacancy.closing_date.date() < now.date():
        raise EligibilityError("Closing date has passed", reason="extension_required")
    await vacancy.set({
        Vacancy.status: "gepubliceerd",
        Vacancy.last_published_at: now,
        Vacancy.needs_sync: True,
        Vacancy.updated_at: now,
    })
    await log_event("vacancy_published", employer_id=str(employer_id), actor_user_id=user_id, vacancy_id=vacancy_id)
    return vacancy


async def request_sync(vacancy_id: str, employer_id: PydanticObjectId) -> Vacancy:
    vacancy = await get_owned_vacancy(vacancy_id, employer_id)
    await vacancy.set({Vacancy.needs_sync: True, Vacancy.updated_at: datetime.utcnow()})
    log.info("vacancy_sync_requested", vacancy_id=vacancy_id)
    return vacancy


async def expire_vacancies(now: datetime | None = None) -> dict[str, int]:
    """Published vacancies whose last day online has passed become verlopen."""
    now = now or datetime.utcnow()
    today = midnight(now.date())
    due = await Vacancy.find(Vacancy.status == "gepubliceerd", Vacancy.closing_date < today).to_list()
    expired = 0
    for vacancy in due:
        # an extension checkout may have moved the closing date since the read
        if not await update_where(
            vacancy.id,
            [Vacancy.status == "gepubliceerd", Vacancy.closing_date < today],
            Set({Vacancy.status: "verlopen", Vacancy.needs_sync: True, Vacancy.updated_at: now}),
        ):
            continue
        expired += 1
        await log_event(
            "vacancy_expired",
            employer_id=str(vacancy.employer_id),
            vacancy_id=str(vacancy.id),
            source="system",
            payload={"closing_date": vacancy.closing_date.date().isoformat()},
        )
    log.info("expire_vacancies_done", expired=expired)
    return {"expired": expired}
