from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class AuditLog(Document):
    """Append-only trail of account and ledger events.

    Payment incidents (see ``app.core.audit.ATTENTION_EVENTS``) are stored with
    ``needs_attention`` set and stay open until an operator resolves them.
    """

    user_id: str | None = None  # None for provider events with no known owner
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    needs_attention: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_note: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("entity_type", 1), ("entity_id", 1)],
            [("needs_attention", 1), ("resolved_at", 1), ("created_at", -1)],
        ]
