from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class Wallet(Document):
    """Per-employer serialization point for debits.

    Holds no balance: the balance is always folded from transactions.
    `version` is bumped by every committed debit so concurrent checkouts
    detect each other.
    """
    employer_id: Indexed(PydanticObjectId, unique=True)
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "wallets"
