from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import Field

VacancyStatus = Literal["concept", "wacht_op_goedkeuring", "gepubliceerd", "verlopen", "gedepubliceerd"]

BOOSTABLE_STATUSES = ("gepubliceerd", "verlopen")

TAG_NEW = "NIEUW"


class Vacancy(Document):
    employer_id: PydanticObjectId
    title: str = ""
    intro_txt: str = ""
    description: str = ""
    location: str = ""
    input_type: Literal["self_service", "we_do_it_for_you"] = "self_service"
    apply_url: str = ""
    application_email: str = ""
    show_apply_form: bool = False
    status: VacancyStatus = "concept"
    package_id: str | None = None
    selected_upsells: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    first_published_at: datetime | None = None
    last_published_at: datetime | None = None
    submitted_at: datetime | None = None
    depublished_at: datetime | None = None
    closing_date: datetime | None = None  # midnight of the last day online
    needs_sync: bool = False  # picked up by the CMS workflow
    applied_checkout_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "vacancies"
        indexes = [
            [("employer_id", 1), ("created_at", -1)],
            [("status", 1), ("closing_date", 1)],
            [("needs_sync", 1)],
        ]
