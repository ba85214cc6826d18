"""Credit ledger: derive an employer's balance by folding the transaction log.

Nothing here touches the database. Callers load the transactions and pass
`now` explicitly, so the same log always folds to the same balance.

Purchased bundles become lots that debits consume oldest-first. A lot whose
`expires_at` has passed stops being spendable at that instant, even before the
sweep writes the matching `expiration` transaction; until then its remainder
is reported as `pending_expiration` and left out of `available`.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Literal

from pydantic import BaseModel

from app.core.exceptions import InsufficientCreditsError

# failed transactions never moved credits; refunded ones are reversed by an explicit refund entry
COUNTED_STATUSES = frozenset({"open", "paid", "refunded"})


class Balance(BaseModel):
    available: int = 0
    total_purchased: int = 0
    total_spent: int = 0
    pending_expiration: int = 0
    next_expiry_at: datetime | None = None
    next_expiry_credits: int = 0


class ExpiredLot(BaseModel):
    transaction_id: str
    employer_id: str
    credits: int
    expires_at: datetime


@dataclass
class _Lot:
    key: str
    employer_id: str
    remaining: int
    expires_at: datetime | None
    expiration_recorded: bool = False

    def expired_at(self, moment: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= moment


def _counted(transactions: Iterable, employer_id: str | None) -> list:
    rows = [
        tx for tx in transactions
        if tx.status in COUNTED_STATUSES
        and (employer_id is None or str(tx.employer_id) == str(employer_id))
    ]
    return sorted(rows, key=lambda tx: tx.created_at)


def _draw(lots: Iterable[_Lot], credits: int, moment: datetime) -> int:
    """Consume credits FIFO from lots still valid at `moment`; return what no lot could cover."""
    for lot in lots:
        if credits <= 0:
            break
        if lot.remaining <= 0 or lot.expired_at(moment):
            continue
        take = min(lot.remaining, credits)
        lot.remaining -= take
        credits -= take
    return credits


def _fold(transactions: Iterable, employer_id: str | None) -> tuple[int, int, list[_Lot]]:
    lots: dict[str, _Lot] = {}
    purchased = 0
    spent = 0
    for index, tx in enumerate(_counted(transactions, employer_id)):
        key = str(tx.id) if tx.id is not None else f"unsaved-{index}"
        credits = tx.credits
        if tx.type == "purchase":
            purchased += credits
            lots[key] = _Lot(key, str(tx.employer_id), credits, tx.expires_at)
        elif tx.type == "spend":
            spent += credits
            _draw(lots.values(), credits, tx.created_at)
        elif tx.type == "expiration":
            spent += credits
            lot = lots.get(tx.source_transaction_id or "")
            if lot is None:
                _draw(lots.values(), credits, tx.created_at)
            else:
                lot.remaining = max(0, lot.remaining - credits)
                lot.expiration_recorded = True
        elif tx.type in ("adjustment", "refund"):
            if credits >= 0:
                if tx.type == "adjustment":
                    purchased += credits
                else:
                    spent -= credits
                lots[key] = _Lot(key, str(tx.employer_id), credits, None)
            else:
                if tx.type == "adjustment":
                    spent -= credits
                else:
                    purchased += credits
                _draw(lots.values(), -credits, tx.created_at)
    return purchased, spent, list(lots.values())


def compute_balance(
    transactions: Iterable,
    now: datetime | None = None,
    employer_id: str | None = None,
) -> Balance:
    """Fold the log into {available, total_purchased, total_spent}.

    With `employer_id` set, entries of other employers are ignored.
    """
    now = now or datetime.utcnow()
    purchased, spent, lots = _fold(transactions, employer_id)
    pending = sum(
        lot.remaining for lot in lots
        if lot.remaining > 0 and lot.expired_at(now) and not lot.expiration_recorded
    )
    live = [lot for lot in lots if lot.remaining > 0 and lot.expires_at is not None and not lot.expired_at(now)]
    next_expiry_at = min((lot.expires_at for lot in live), default=None)
    next_expiry_credits = sum(lot.remaining for lot in live if lot.expires_at == next_expiry_at)
    return Balance(
        available=purchased - spent - pending,
        total_purchased=purchased,
        total_spent=spent,
        pending_expiration=pending,
        next_expiry_at=next_expiry_at,
        next_expiry_credits=next_expiry_credits,
    )


def expired_lots(
    transactions: Iterable,
    now: datetime | None = None,
    employer_id: str | None = None,
) -> list[ExpiredLot]:
    """Lots past expiry that still hold credits and have no expiration entry yet."""
    now = now or datetime.utcnow()
    _, _, lots = _fold(transactions, employer_id)
    return [
        ExpiredLot(
            transaction_id=lot.key,
            employer_id=lot.employer_id,
            credits=lot.remaining,
            expires_at=lot.expires_at,
        )
        for lot in lots
        if lot.remaining > 0 and lot.expired_at(now) and not lot.expiration_recorded
    ]


def can_afford(balance: Balance, cost: int) -> bool:
    if cost < 0:
        raise ValueError("cost must be non-negative")
    return balance.available - cost >= 0


def require_affordable(balance: Balance, cost: int) -> None:
    if not can_afford(balance, cost):
        raise InsufficientCreditsError(required=cost, available=balance.available)


def price_display_mode(total_purchased: int) -> Literal["credits", "euros"]:
    """Employers who never bought credits see euro prices first."""
    return "credits" if total_purchased > 0 else "euros"
