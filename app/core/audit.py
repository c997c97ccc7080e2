"""Audit trail and the operator queue of payment incidents."""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from bson.errors import InvalidId

from app.core.exceptions import ConflictError, NotFoundError
from app.core.logging import get_logger
from app.models.audit_log import AuditLog

log = get_logger(__name__)

# Money moved (or may move) without a matching balance change
ATTENTION_EVENTS = frozenset(
    {
        "unknown_transaction",
        "orphaned_payment",
        "checkout_orphaned",
        "payment_after_expiry",
        "settlement_unreconciled",
    }
)


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    await AuditLog(
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
        needs_attention=event_type in ATTENTION_EVENTS,
    ).insert()


async def list_incidents(limit: int, offset: int, include_resolved: bool = False) -> list[AuditLog]:
    """Flagged entries, newest first."""
    query = AuditLog.find(AuditLog.needs_attention == True)  # noqa: E712
    if not include_resolved:
        query = query.find(AuditLog.resolved_at == None)  # noqa: E711
    return await query.sort(-AuditLog.created_at).skip(offset).limit(limit).to_list()


async def resolve_incident(audit_id: str, resolved_by: str, note: str | None = None) -> AuditLog:
    try:
        oid = PydanticObjectId(audit_id)
    except (InvalidId, TypeError) as e:
        raise NotFoundError("Incident not found") from e
    entry = await AuditLog.get(oid)
    if entry is None or not entry.needs_attention:
        raise NotFoundError("Incident not found")
    if entry.resolved_at is not None:
        raise ConflictError("Incident already resolved", details={"resolved_by": entry.resolved_by})
    entry.resolved_at = datetime.utcnow()
    entry.resolved_by = resolved_by
    entry.resolution_note = note
    await entry.save()
    log.info("incident_resolved", audit_id=audit_id, event_type=entry.event_type, resolved_by=resolved_by)
    return entry
