from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core import audit as audit_trail
from app.core.currencies import Currency
from app.core.pagination import DEFAULT_LIMIT, MAX_LIMIT, clamp
from app.deps import get_audit, get_catalog, require_admin
from app.ledger import Catalog
from app.models.user import UserAccount

router = APIRouter()


class PackageCreate(BaseModel):
    package_id: str | None = None
    name: str = ""
    credits: int = Field(gt=0)
    unit_amount: int = Field(gt=0)
    currency: Currency


class ResourceCreate(BaseModel):
    resource_id: str | None = None
    name: str = Field(min_length=1)
    description: str | None = None
    cost: int = Field(default=0, ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)


@router.post("/packages")
async def admin_package_create(
    body: PackageCreate,
    user: UserAccount = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog),
    audit=Depends(get_audit),
):
    """Admin: add a purchasable credit package (immutable once created)."""
    package = await catalog.create_package(
        body.credits,
        body.unit_amount,
        body.currency,
        name=body.name,
        package_id=body.package_id,
    )
    await audit(str(user.id), "package_created", "credit_package", package.package_id)
    return {"package": package}


@router.post("/resources")
async def admin_resource_create(
    body: ResourceCreate,
    user: UserAccount = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog),
    audit=Depends(get_audit),
):
    """Admin: add a priced resource."""
    resource = await catalog.create_resource(
        body.name,
        cost=body.cost,
        description=body.description,
        payload=body.payload,
        resource_id=body.resource_id,
    )
    await audit(str(user.id), "resource_created", "resource", resource.resource_id)
    return {"resource": resource.public_view()}


class IncidentResolve(BaseModel):
    note: str | None = Field(default=None, max_length=2000)


def _incident_view(entry) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "event_type": entry.event_type,
        "user_id": entry.user_id,
        "entity_id": entry.entity_id,
        "metadata": entry.metadata,
        "created_at": entry.created_at.isoformat(),
        "resolved_at": entry.resolved_at.isoformat() if entry.resolved_at else None,
        "resolved_by": entry.resolved_by,
        "resolution_note": entry.resolution_note,
    }


@router.get("/incidents")
async def admin_incidents(
    user: UserAccount = Depends(require_admin),
    include_resolved: bool = Query(False),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
):
    """Admin: unknown checkouts and orphaned payments awaiting manual reconciliation."""
    limit, offset = clamp(limit, offset)
    entries = await audit_trail.list_incidents(limit, offset, include_resolved=include_resolved)
    return {"incidents": [_incident_view(e) for e in entries], "limit": limit, "offset": offset}


@router.post("/incidents/{incident_id}/resolve")
async def admin_incident_resolve(
    incident_id: str,
    body: IncidentResolve,
    user: UserAccount = Depends(require_admin),
):
    entry = await audit_trail.resolve_incident(incident_id, str(user.id), note=body.note)
    return {"incident": _incident_view(entry)}
