from typing import Literal

from beanie import Document
from pydantic import Field

RepeatMode = Literal["once", "unlimited", "renewable", "until_max"]


class Product(Document):
    """Catalog entry. Managed outside the portal; read-only here."""
    display_name: str
    slug: str | None = None
    type: Literal["vacancy_package", "credit_bundle", "upsell"]
    credits: int
    price: float = 0.0
    repeat_mode: RepeatMode = "once"
    duration_days: int | None = None  # package base duration / renewable window
    max_value: int | None = None  # until_max: days after first publication
    availability: list[str] = Field(default_factory=list)  # "add-vacancy", "boost-option"
    included_upsells: list[str] = Field(default_factory=list)
    validity_months: int | None = None  # credit bundles
    grants_tag: str | None = None
    is_active: bool = True
    sort_order: int = 0

    class Settings:
        name = "products"
        indexes = [[("type", 1), ("is_active", 1)]]
