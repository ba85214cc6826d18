from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class User(Document):
    email: Indexed(str, unique=True)
    name: str = ""
    role: str = "user"  # "user" | "admin"
    employer_id: PydanticObjectId | None = None
    session_version: int = 0
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
