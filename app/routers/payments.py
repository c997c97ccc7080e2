from fastapi import APIRouter, Depends, Header, Request

from app.core.exceptions import OrphanedPaymentError, UnknownTransactionError
from app.core.logging import get_logger
from app.deps import get_credit_manager, get_payment_gateway
from app.ledger import CreditTransactionManager
from app.ledger.collaborators import PaymentGateway

router = APIRouter()
log = get_logger(__name__)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    credits: CreditTransactionManager = Depends(get_credit_manager),
):
    """Stripe webhook: checkout.session.* -> apply to the credit transaction (idempotent).

    Unknown or orphaned payments are acknowledged so Stripe stops redelivering; they
    are flagged for reconciliation instead. Storage faults and lost races surface as
    409/503 so Stripe retries.
    """
    body = await request.body()
    event = gateway.parse_event(body, stripe_signature)
    if event is None:
        return {"status": "ignored"}
    try:
        tx = await credits.apply_notification(event.checkout_ref, event.status)
    except (UnknownTransactionError, OrphanedPaymentError) as e:
        return {"status": "rejected", "code": e.code, "checkout_ref": event.checkout_ref}
    log.info("webhook_applied", event_type=event.type, checkout_ref=event.checkout_ref, status=tx.status.value)
    return {"status": "ok", "transaction_status": tx.status.value}
