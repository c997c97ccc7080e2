"""Stripe checkout sessions and webhook parsing for credit top-ups."""

import stripe
from fastapi.concurrency import run_in_threadpool

from app.core.config import get_settings
from app.core.exceptions import BadRequestError
from app.core.logging import get_logger
from app.ledger.collaborators import CheckoutItem, PaymentGateway
from app.ledger.models import CheckoutSession, PaymentEvent, TransactionStatus

log = get_logger(__name__)


def status_for_event(event_type: str, session: dict) -> TransactionStatus | None:
    """Map a Stripe checkout event onto the transaction status it reports, if any."""
    if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
        # "unpaid" completions (delayed methods) settle later via async_payment_succeeded
        if session.get("payment_status") in ("paid", "no_payment_required"):
            return TransactionStatus.SUCCEEDED
        return TransactionStatus.PENDING
    if event_type == "checkout.session.expired":
        return TransactionStatus.EXPIRED
    return None


class StripeGateway(PaymentGateway):
    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> None:
        settings = get_settings()
        self._secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self._webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self._success_url = success_url or settings.checkout_success_url
        self._cancel_url = cancel_url or settings.checkout_cancel_url

    @property
    def is_configured(self) -> bool:
        return bool(self._secret_key)

    async def create_checkout_session(
        self,
        items: list[CheckoutItem],
        success_url: str | None = None,
        cancel_url: str | None = None,
        customer_email: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CheckoutSession:
        if not self.is_configured:
            raise BadRequestError("Payments not configured")
        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": item.currency,
                        "unit_amount": item.unit_amount,
                        "product_data": {
                            "name": item.name,
                            **({"description": item.description} if item.description else {}),
                        },
                    },
                    "quantity": item.quantity,
                }
                for item in items
            ],
            "success_url": success_url or self._success_url,
            "cancel_url": cancel_url or self._cancel_url,
            "metadata": metadata or {},
            "api_key": self._secret_key,
        }
        if customer_email:
            params["customer_email"] = customer_email
        # The SDK is blocking
        session = await run_in_threadpool(stripe.checkout.Session.create, **params)
        log.info("stripe_session_created", session_id=session.id)
        return CheckoutSession(session_id=session.id, url=session.url)

    async def expire_checkout_session(self, session_id: str) -> None:
        if not self.is_configured:
            raise BadRequestError("Payments not configured")
        await run_in_threadpool(stripe.checkout.Session.expire, session_id, api_key=self._secret_key)

    def parse_event(self, payload: bytes, signature: str | None) -> PaymentEvent | None:
        if not self._webhook_secret:
            raise BadRequestError("Webhook secret not configured")
        if not signature:
            raise BadRequestError("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise BadRequestError("Invalid webhook signature") from e
        except ValueError as e:
            raise BadRequestError("Malformed webhook payload") from e
        return payment_event(event["type"], event["data"]["object"])


def payment_event(event_type: str, session: dict) -> PaymentEvent | None:
    """Reduce a verified Stripe event to a PaymentEvent; None when not a checkout event."""
    if not event_type.startswith("checkout.session."):
        log.info("webhook_event_skipped", event_type=event_type)
        return None
    checkout_ref = session.get("id")
    if not checkout_ref:
        raise BadRequestError("Webhook event without checkout session id")
    return PaymentEvent(
        checkout_ref=checkout_ref,
        type=event_type,
        status=status_for_event(event_type, session),
    )
