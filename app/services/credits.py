"""Credit wallet I/O: load the log, stage serialized debits, record purchases and expirations."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from beanie import PydanticObjectId
from beanie.operators import In, Inc, Set
from dateutil.relativedelta import relativedelta
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import ConflictError, NotFoundError, StoreWriteError, ValidationFailedError
from app.core.logging import get_logger
from app.models.employer import Employer
from app.models.product import Product
from app.models.transaction import Transaction
from app.models.vacancy import Vacancy
from app.models.wallet import Wallet
from app.services import ledger
from app.services.ledger import Balance

log = get_logger(__name__)


@dataclass
class LedgerState:
    """Wallet version and log read together; a debit validated against it commits only if the version still holds."""
    wallet: Wallet
    transactions: list[Transaction]
    balance: Balance


async def get_or_create_wallet(employer_id: PydanticObjectId) -> Wallet:
    wallet = await Wallet.find_one(Wallet.employer_id == employer_id)
    if wallet:
        return wallet
    wallet = Wallet(employer_id=employer_id)
    try:
        await wallet.insert()
    except DuplicateKeyError:
        # lost the creation race to another request
        wallet = await Wallet.find_one(Wallet.employer_id == employer_id)
    return wallet


async def list_transactions(employer_id: PydanticObjectId) -> list[Transaction]:
    return await Transaction.find(Transaction.employer_id == employer_id).sort(+Transaction.created_at).to_list()


async def get_balance(employer_id: PydanticObjectId, now: datetime | None = None) -> Balance:
    """Recomputed from the log on every call; never stored."""
    transactions = await list_transactions(employer_id)
    return ledger.compute_balance(transactions, now=now, employer_id=str(employer_id))


async def load_state(employer_id: PydanticObjectId, now: datetime | None = None) -> LedgerState:
    # version first: a debit is inserted before its version bump, so a newer version implies a visible debit
    wallet = await get_or_create_wallet(employer_id)
    transactions = await list_transactions(employer_id)
    balance = ledger.compute_balance(transactions, now=now, employer_id=str(employer_id))
    return LedgerState(wallet=wallet, transactions=transactions, balance=balance)


async def set_status(tx: Transaction, status: str) -> None:
    await tx.set({Transaction.status: status})


async def stage_debit(state: LedgerState, tx: Transaction) -> bool:
    """Insert the debit as open, then claim the wallet version it was validated against.

    Returns False (and marks the debit failed) when another debit committed first.
    """
    tx.status = "open"
    tx.wallet_id = state.wallet.id
    await tx.insert()
    result = await Wallet.find_one(
        Wallet.id == state.wallet.id,
        Wallet.version == state.wallet.version,
    ).update(Inc({Wallet.version: 1}), Set({Wallet.updated_at: datetime.utcnow()}))
    if result is not None and getattr(result, "modified_count", 0) == 1:
        state.wallet.version += 1
        return True
    await set_status(tx, "failed")
    log.info(
        "wallet_version_conflict",
        employer_id=str(state.wallet.employer_id),
        version=state.wallet.version,
        transaction_id=str(tx.id),
    )
    return False


async def debit(
    employer_id: PydanticObjectId,
    build: Callable[[LedgerState], Awaitable[Transaction]],
    now: datetime | None = None,
) -> tuple[LedgerState, Transaction]:
    """Run `build` against a fresh ledger state and stage its debit; retry on version conflicts.

    `build` validates (raising on eligibility or affordability) and returns the
    unsaved debit. Each retry re-reads everything, so a checkout that lost a
    race is re-validated against the winner's spend.
    """
    attempts = get_settings().checkout_max_attempts
    for attempt in range(1, attempts + 1):
        state = await load_state(employer_id, now)
        tx = await build(state)
        if await stage_debit(state, tx):
            return state, tx
        log.info("debit_retry", employer_id=str(employer_id), attempt=attempt)
    raise ConflictError(
        "Another checkout for this account is in progress, please retry",
        details={"attempts": attempts},
    )


async def finalize_debit(tx: Transaction, write: Awaitable[Any]) -> None:
    """Await the record write paired with a staged debit; release the debit if that write fails."""
    try:
        await write
    except Exception as exc:
        log.error("debit_write_failed", transaction_id=str(tx.id), checkout_id=tx.checkout_id, error=str(exc))
        compensated = True
        try:
            await set_status(tx, "failed")
        except Exception:
            compensated = False
            log.critical("debit_compensation_failed", transaction_id=str(tx.id), checkout_id=tx.checkout_id)
        message = (
            "Could not update the vacancy; no credits were charged"
            if compensated
            else "Could not update the vacancy; the charge will be reversed automatically"
        )
        raise StoreWriteError(message, details={"checkout_id": tx.checkout_id, "compensated": compensated}) from exc
    try:
        await set_status(tx, "paid")
    except Exception:
        # vacancy already records the checkout id; reconcile_open_spends settles it
        log.exception("debit_settle_failed", transaction_id=str(tx.id), checkout_id=tx.checkout_id)


async def find_by_idempotency_key(employer_id: PydanticObjectId, key: str) -> Transaction | None:
    return await Transaction.find_one(
        Transaction.employer_id == employer_id,
        Transaction.idempotency_key == key,
        Transaction.status != "failed",
    )


async def purchase_credits(
    employer_id: PydanticObjectId,
    product_id: str,
    context: str,
    invoice_details: dict[str, Any],
    user_id: str | None = None,
    now: datetime | None = None,
) -> tuple[Transaction, Balance]:
    """Record a credit bundle purchase. Credits are usable immediately; the transaction stays open until invoiced."""
    now = now or datetime.utcnow()
    if not PydanticObjectId.is_valid(product_id):
        raise ValidationFailedError("Invalid product id", details={"product_id": product_id})
    product = await Product.get(PydanticObjectId(product_id))
    if not product:
        raise NotFoundError("Product not found")
    if not product.is_active or product.type != "credit_bundle":
        raise ValidationFailedError("Only active credit bundles can be purchased", details={"product_id": product_id})
    employer = await Employer.get(employer_id)
    if not employer:
        raise NotFoundError("Employer not found")
    wallet = await get_or_create_wallet(employer_id)
    months = product.validity_months or get_settings().default_credit_validity_months
    snapshot = dict(invoice_details)
    snapshot.update(
        company_name=employer.company_name or employer.display_name,
        kvk=employer.kvk or "",
        purchased_at=now.isoformat(),
    )
    tx = Transaction(
        employer_id=employer_id,
        wallet_id=wallet.id,
        user_id=user_id,
        type="purchase",
        status="open",
        credits=product.credits,
        money_amount=product.price,
        product_ids=[str(product.id)],
        context=context,
        expires_at=now + relativedelta(months=months),
        invoice_details_snapshot=snapshot,
        created_at=now,
    )
    await tx.insert()
    balance = await get_balance(employer_id, now)
    log.info("credits_purchased", employer_id=str(employer_id), credits=product.credits, transaction_id=str(tx.id))
    await log_event(
        "credits_purchased",
        employer_id=str(employer_id),
        actor_user_id=user_id,
        payload={
            "product_id": str(product.id),
            "product_name": product.display_name,
            "credits_amount": product.credits,
            "money_amount": product.price,
            "context": context,
            "transaction_id": str(tx.id),
        },
    )
    return tx, balance


async def adjust_credits(
    employer_id: PydanticObjectId,
    credits: int,
    note: str,
    admin_user_id: str | None = None,
    now: datetime | None = None,
) -> tuple[Transaction, Balance]:
    """Manual correction. Deductions go through the serialized debit path and cannot overdraw."""
    now = now or datetime.utcnow()
    if credits == 0:
        raise ValidationFailedError("Adjustment must be non-zero", details={"credits": credits})
    if not await Employer.get(employer_id):
        raise NotFoundError("Employer not found")

    if credits > 0:
        wallet = await get_or_create_wallet(employer_id)
        tx = Transaction(
            employer_id=employer_id,
            wallet_id=wallet.id,
            user_id=admin_user_id,
            type="adjustment",
            status="paid",
            credits=credits,
            context="admin",
            note=note,
            created_at=now,
        )
        await tx.insert()
    else:
        async def build(state: LedgerState) -> Transaction:
            ledger.require_affordable(state.balance, -credits)
            return Transaction(
                employer_id=employer_id,
                user_id=admin_user_id,
                type="adjustment",
                credits=credits,
                context="admin",
                note=note,
                created_at=now,
            )

        _, tx = await debit(employer_id, build, now)
        await set_status(tx, "paid")

    await log_event(
        "credits_adjusted",
        employer_id=str(employer_id),
        actor_user_id=admin_user_id,
        source="admin",
        payload={"credits": credits, "note": note, "transaction_id": str(tx.id)},
    )
    return tx, await get_balance(employer_id, now)


async def expire_credits(now: datetime | None = None) -> dict[str, int]:
    """Write the compensating expiration entry for every expired lot that still holds credits.

    Reads already exclude these credits; this only makes the log explicit.
    """
    now = now or datetime.utcnow()
    candidates = await Transaction.find(
        Transaction.type == "purchase",
        Transaction.expires_at <= now,
        In(Transaction.status, list(ledger.COUNTED_STATUSES)),
    ).to_list()
    employer_ids = {tx.employer_id for tx in candidates}
    results = {"processed": 0, "failed": 0, "total_expired": 0}
    for employer_id in employer_ids:
        transactions = await list_transactions(employer_id)
        for lot in ledger.expired_lots(transactions, now=now, employer_id=str(employer_id)):
            key = f"expire_{lot.transaction_id}"
            if await Transaction.find_one(Transaction.idempotency_key == key):
                continue
            try:
                await Transaction(
                    employer_id=employer_id,
                    type="expiration",
                    status="paid",
                    credits=lot.credits,
                    context="system",
                    source_transaction_id=lot.transaction_id,
                    idempotency_key=key,
                    created_at=now,
                ).insert()
            except Exception as exc:
                results["failed"] += 1
                log.error("credit_expiration_failed", lot_id=lot.transaction_id, error=str(exc))
                continue
            results["processed"] += 1
            results["total_expired"] += lot.credits
            await log_event(
                "credits_expired",
                employer_id=str(employer_id),
                source="system",
                payload={"batch_id": lot.transaction_id, "credits_expired": lot.credits, "expires_at": lot.expires_at.isoformat()},
            )
    log.info("expire_credits_done", **results)
    return results


async def reconcile_open_spends(now: datetime | None = None) -> dict[str, int]:
    """Settle spends left open by an interrupted checkout.

    Paid if the vacancy recorded the checkout id, failed (credits released) otherwise.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=get_settings().open_spend_grace_minutes)
    stuck = await Transaction.find(
        Transaction.type == "spend",
        Transaction.status == "open",
        Transaction.created_at <= cutoff,
    ).to_list()
    results = {"paid": 0, "failed": 0}
    for tx in stuck:
        applied = False
        if tx.vacancy_id and tx.checkout_id and PydanticObjectId.is_valid(tx.vacancy_id):
            vacancy = await Vacancy.get(PydanticObjectId(tx.vacancy_id))
            applied = vacancy is not None and tx.checkout_id in vacancy.applied_checkout_ids
        status = "paid" if applied else "failed"
        await set_status(tx, status)
        results[status] += 1
        log.warning("open_spend_reconciled", transaction_id=str(tx.id), checkout_id=tx.checkout_id, status=status)
    return results
