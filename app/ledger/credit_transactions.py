"""Credit top-ups: checkout initiation and exactly-once application of provider notifications."""

from typing import Any, Awaitable, Callable, Sequence

from app.core.background import BestEffortDispatcher
from app.core.exceptions import (
    BadRequestError,
    ConcurrencyConflictError,
    NotFoundError,
    OrphanedPaymentError,
    SettlementUnreconciledError,
    TransactionInitFailedError,
    UnknownTransactionError,
)
from app.core.logging import get_logger
from app.ledger.collaborators import CheckoutItem, PaymentGateway, UserDirectory
from app.ledger.models import (
    CreditTransaction,
    InitiatedCheckout,
    TransactionStatus,
    UserBalance,
)
from app.ledger.store.base import LedgerStore

log = get_logger(__name__)

# Only a pending checkout can be settled. Success reported after an expiry is an incident.
SETTLEABLE = (TransactionStatus.PENDING,)

AuditFn = Callable[..., Awaitable[None]]
SettledHook = Callable[[CreditTransaction], Awaitable[Any]]


class CreditTransactionManager:
    def __init__(
        self,
        store: LedgerStore,
        gateway: PaymentGateway,
        users: UserDirectory,
        dispatcher: BestEffortDispatcher | None = None,
        audit: AuditFn | None = None,
        on_settled: Sequence[SettledHook] = (),
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.users = users
        self.dispatcher = dispatcher or BestEffortDispatcher()
        self.audit = audit
        self.on_settled = list(on_settled)

    async def balance(self, user_id: str) -> UserBalance:
        """Current balance; zero with no timestamp when the user never had one."""
        bal = await self.store.get_balance(user_id)
        return bal or UserBalance(user_id=user_id, credits=0, updated_at=None)

    async def list_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> list[CreditTransaction]:
        return await self.store.list_transactions(user_id, limit, offset)

    async def initiate(
        self,
        user_id: str,
        package_id: str,
        quantity: int = 1,
        customer_email: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> InitiatedCheckout:
        """Open a checkout session for a package and record it as a pending transaction.

        The pending record is only written once the processor has issued a session
        reference. If that write fails the session is expired again so no payable
        session exists without a local record.
        """
        if quantity < 1:
            raise BadRequestError("Quantity must be at least 1")
        package = await self.store.get_package(package_id)
        if package is None:
            raise NotFoundError("Credit package not found")

        item = CheckoutItem(
            name=package.name or f"{package.credits} credits",
            unit_amount=package.unit_amount,
            currency=package.currency.value,
            quantity=quantity,
            description=f"{package.credits} credits",
        )
        try:
            session = await self.gateway.create_checkout_session(
                [item],
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
                metadata={"user_id": user_id, "package_id": package_id},
            )
        except Exception as e:
            log.error("checkout_session_failed", user_id=user_id, package_id=package_id, error=str(e))
            raise TransactionInitFailedError(
                "Payment processor rejected the checkout",
                details={"package_id": package_id},
            ) from e

        transaction = CreditTransaction(
            checkout_ref=session.session_id,
            user_id=user_id,
            package_id=package_id,
            credits=package.credits * quantity,
            unit_amount=package.unit_amount,
            currency=package.currency,
            quantity=quantity,
            checkout_url=session.url,
        )
        try:
            await self.store.insert_transaction(transaction)
        except Exception as e:
            log.error(
                "transaction_record_failed",
                checkout_ref=session.session_id,
                user_id=user_id,
                error=str(e),
            )
            await self._cancel_session(session.session_id, user_id)
            raise TransactionInitFailedError(details={"package_id": package_id}) from e

        log.info(
            "checkout_initiated",
            checkout_ref=transaction.checkout_ref,
            user_id=user_id,
            package_id=package_id,
            credits=transaction.credits,
        )
        return InitiatedCheckout(transaction=transaction, checkout_url=session.url)

    async def _cancel_session(self, session_id: str, user_id: str) -> None:
        try:
            await self.gateway.expire_checkout_session(session_id)
            log.info("checkout_session_expired", checkout_ref=session_id)
        except Exception as e:
            # Still payable with nothing to attribute it to.
            self._flag("checkout_orphaned", user_id, session_id, {"error": str(e)})

    async def apply_notification(
        self,
        checkout_ref: str,
        reported_status: TransactionStatus | None,
    ) -> CreditTransaction:
        """Apply one provider notification. Safe to call any number of times for the same event."""
        transaction = await self.store.get_transaction(checkout_ref)
        if transaction is None:
            self._flag("unknown_transaction", None, checkout_ref, {"reported_status": _value(reported_status)})
            raise UnknownTransactionError(checkout_ref)

        if not await self.users.exists(transaction.user_id):
            self._flag(
                "orphaned_payment",
                transaction.user_id,
                checkout_ref,
                {
                    "reported_status": _value(reported_status),
                    "credits": transaction.credits,
                    "unit_amount": transaction.unit_amount,
                    "currency": transaction.currency.value,
                    "quantity": transaction.quantity,
                },
            )
            raise OrphanedPaymentError(checkout_ref, transaction.user_id)

        if transaction.status == TransactionStatus.SUCCEEDED:
            log.info("notification_replayed", checkout_ref=checkout_ref, reported_status=_value(reported_status))
            return transaction

        if reported_status == TransactionStatus.SUCCEEDED:
            return await self._settle(transaction)
        if reported_status == TransactionStatus.EXPIRED:
            return await self._expire(transaction)

        log.info("notification_ignored", checkout_ref=checkout_ref, reported_status=_value(reported_status))
        return transaction

    async def _settle(self, transaction: CreditTransaction) -> CreditTransaction:
        ref = transaction.checkout_ref
        if transaction.status == TransactionStatus.EXPIRED:
            return self._paid_after_expiry(transaction)
        try:
            settled = await self.store.settle_transaction(ref, SETTLEABLE)
        except ConcurrencyConflictError:
            settled = None
        except SettlementUnreconciledError as e:
            self._flag(
                "settlement_unreconciled",
                transaction.user_id,
                ref,
                {"credits": transaction.credits, "restored": e.details["restored"]},
            )
            raise
        if settled is None:
            current = await self.store.get_transaction(ref)
            if current is not None and current.status == TransactionStatus.SUCCEEDED:
                log.info("notification_replayed", checkout_ref=ref, reported_status="succeeded")
                return current
            if current is not None and current.status == TransactionStatus.EXPIRED:
                return self._paid_after_expiry(current)
            raise ConcurrencyConflictError(details={"checkout_ref": ref})

        log.info("credits_settled", checkout_ref=ref, user_id=settled.user_id, credits=settled.credits)
        if self.audit is not None:
            self.dispatcher.dispatch(
                "audit_credits_settled",
                self.audit,
                settled.user_id,
                "credits_settled",
                "credit_transaction",
                ref,
                {"credits": settled.credits, "unit_amount": settled.unit_amount, "currency": settled.currency.value},
            )
        for hook in self.on_settled:
            self.dispatcher.dispatch(getattr(hook, "__name__", "on_settled"), hook, settled)
        return settled

    async def _expire(self, transaction: CreditTransaction) -> CreditTransaction:
        ref = transaction.checkout_ref
        expired = await self.store.transition_transaction(
            ref, [TransactionStatus.PENDING], TransactionStatus.EXPIRED
        )
        if expired is None:
            current = await self.store.get_transaction(ref)
            log.info("expiry_ignored", checkout_ref=ref, status=_value(current.status if current else None))
            return current or transaction
        log.info("checkout_expired", checkout_ref=ref, user_id=expired.user_id)
        return expired

    def _paid_after_expiry(self, transaction: CreditTransaction) -> CreditTransaction:
        """Money arrived for a checkout already closed as expired. Left uncredited and queued for review."""
        self._flag(
            "payment_after_expiry",
            transaction.user_id,
            transaction.checkout_ref,
            {
                "credits": transaction.credits,
                "unit_amount": transaction.unit_amount,
                "currency": transaction.currency.value,
                "quantity": transaction.quantity,
            },
        )
        return transaction

    def _flag(self, event_type: str, user_id: str | None, checkout_ref: str, metadata: dict) -> None:
        """Surface a payment incident for manual reconciliation."""
        log.error(event_type, checkout_ref=checkout_ref, user_id=user_id, needs_attention=True, **metadata)
        if self.audit is not None:
            self.dispatcher.dispatch(
                f"audit_{event_type}",
                self.audit,
                user_id,
                event_type,
                "credit_transaction",
                checkout_ref,
                metadata,
            )


def _value(status: TransactionStatus | None) -> str | None:
    return status.value if status is not None else None
