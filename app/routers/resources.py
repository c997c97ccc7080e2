from fastapi import APIRouter, Depends, Query

from app.core.pagination import DEFAULT_LIMIT, MAX_LIMIT, Page, build_page, clamp
from app.deps import (
    get_access_resolver,
    get_catalog,
    get_credit_manager,
    get_current_user,
    get_optional_user,
    get_purchase_manager,
)
from app.ledger import AccessResolver, Catalog, CreditTransactionManager, ResourcePurchaseManager
from app.ledger.models import ResourcePurchase
from app.models.user import UserAccount

router = APIRouter()


@router.get("")
async def resources_list(
    catalog: Catalog = Depends(get_catalog),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
):
    """Public listing; payloads are never included."""
    limit, offset = clamp(limit, offset)
    page = build_page(await catalog.list_resources(limit + 1, offset), limit, offset)
    return {
        "resources": [r.public_view() for r in page.items],
        "limit": limit,
        "offset": offset,
        "has_more": page.has_more,
    }


@router.get("/purchases")
async def resources_purchases(
    user: UserAccount = Depends(get_current_user),
    purchases: ResourcePurchaseManager = Depends(get_purchase_manager),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
) -> Page[ResourcePurchase]:
    """Resources bought by current user (newest first)."""
    limit, offset = clamp(limit, offset)
    rows = await purchases.list_purchases(str(user.id), limit + 1, offset)
    return build_page(rows, limit, offset)


@router.get("/{resource_id}")
async def resource_get(
    resource_id: str,
    user: UserAccount | None = Depends(get_optional_user),
    access: AccessResolver = Depends(get_access_resolver),
):
    """Resource with payload if the caller may access it, metadata otherwise."""
    return await access.view(str(user.id) if user else None, resource_id)


@router.post("/{resource_id}/buy")
async def resource_buy(
    resource_id: str,
    user: UserAccount = Depends(get_current_user),
    purchases: ResourcePurchaseManager = Depends(get_purchase_manager),
    credits: CreditTransactionManager = Depends(get_credit_manager),
):
    """Spend credits on a resource. Buying an owned resource returns the original purchase."""
    purchase = await purchases.purchase(str(user.id), resource_id)
    bal = await credits.balance(str(user.id))
    return {"purchase": purchase, "credits": bal.credits}
