from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class UserAccount(Document):
    email: Indexed(str, unique=True)
    first_name: str
    last_name: str
    password_hash: str
    verified: bool = False
    role: str = "user"  # "user" | "admin"
    session_version: int = 0
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "user_accounts"
