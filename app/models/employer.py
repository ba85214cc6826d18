from datetime import datetime
from typing import Literal

from beanie import Document
from pydantic import Field


class Employer(Document):
    """Tenant account. Never hard-deleted; restarting an account archives it."""
    company_name: str = ""
    display_name: str = ""
    kvk: str | None = None
    invoice_contact_name: str | None = None
    invoice_email: str | None = None
    invoice_street: str | None = None
    invoice_postal_code: str | None = None
    invoice_city: str | None = None
    status: Literal["pending_onboarding", "active"] = "pending_onboarding"
    archived_at: datetime | None = None
    needs_sync: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "employers"
        indexes = [[("kvk", 1)]]
