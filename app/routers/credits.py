from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.pagination import DEFAULT_LIMIT, MAX_LIMIT, Page, build_page, clamp
from app.deps import get_catalog, get_credit_manager, get_current_user
from app.ledger import Catalog, CreditTransactionManager
from app.ledger.models import CreditPackage, CreditTransaction
from app.models.user import UserAccount

router = APIRouter()


class BuyCreditsRequest(BaseModel):
    package_id: str
    quantity: int = Field(default=1, ge=1, le=100)


@router.get("/balance")
async def credits_balance(
    user: UserAccount = Depends(get_current_user),
    credits: CreditTransactionManager = Depends(get_credit_manager),
):
    """Return current credit balance."""
    bal = await credits.balance(str(user.id))
    return {
        "credits": bal.credits,
        "updated_at": bal.updated_at.isoformat() if bal.updated_at else None,
    }


@router.get("/packages")
async def credits_packages(catalog: Catalog = Depends(get_catalog)) -> dict[str, list[CreditPackage]]:
    return {"packages": await catalog.list_packages()}


@router.post("/buy")
async def credits_buy(
    body: BuyCreditsRequest,
    user: UserAccount = Depends(get_current_user),
    credits: CreditTransactionManager = Depends(get_credit_manager),
):
    """Start a Stripe checkout for a credit package; credits land when the webhook confirms payment."""
    out = await credits.initiate(
        str(user.id),
        body.package_id,
        quantity=body.quantity,
        customer_email=user.email,
    )
    return {
        "checkout_ref": out.transaction.checkout_ref,
        "checkout_url": out.checkout_url,
        "credits": out.transaction.credits,
        "status": out.transaction.status.value,
    }


@router.get("/transactions")
async def credits_transactions(
    user: UserAccount = Depends(get_current_user),
    credits: CreditTransactionManager = Depends(get_credit_manager),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
) -> Page[CreditTransaction]:
    """Top-up transactions for current user (newest first)."""
    limit, offset = clamp(limit, offset)
    rows = await credits.list_transactions(str(user.id), limit + 1, offset)
    return build_page(rows, limit, offset)
