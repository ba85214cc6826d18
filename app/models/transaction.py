from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import Field

TransactionType = Literal["purchase", "spend", "refund", "adjustment", "expiration"]
TransactionStatus = Literal["open", "paid", "failed", "refunded"]
TransactionContext = Literal["dashboard", "vacancy", "boost", "renew", "transactions", "system", "admin"]


class Transaction(Document):
    """Immutable credit ledger entry. Only `status` changes after insert."""
    employer_id: PydanticObjectId
    wallet_id: PydanticObjectId | None = None
    user_id: str | None = None
    vacancy_id: str | None = None
    type: TransactionType
    # purchase/spend/expiration: non-negative; refund/adjustment: signed (+ returns credits)
    credits: int
    product_ids: list[str] = Field(default_factory=list)
    status: TransactionStatus = "paid"
    context: TransactionContext | None = None
    money_amount: float | None = None
    expires_at: datetime | None = None  # purchased bundles only
    source_transaction_id: str | None = None  # expiration -> lot, refund -> reversed tx
    checkout_id: str | None = None
    idempotency_key: str | None = None
    invoice_reference: str | None = None
    invoice_details_snapshot: dict | None = None
    note: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "transactions"
        indexes = [
            [("employer_id", 1), ("created_at", 1)],
            [("vacancy_id", 1)],
            [("idempotency_key", 1)],
            [("type", 1), ("status", 1)],
        ]
