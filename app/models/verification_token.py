from datetime import datetime

from beanie import Document, Indexed
from pymongo import ASCENDING, IndexModel
from pydantic import Field


class VerificationToken(Document):
    """One-time account verification link; Mongo drops it once expires_at passes."""
    token: Indexed(str, unique=True)
    user_id: str
    email_delivered: bool = False
    expires_at: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "verification_tokens"
        indexes = [
            IndexModel([("expires_at", ASCENDING)], expireAfterSeconds=0),
            [("email_delivered", 1), ("expires_at", 1)],
        ]
