"""Interfaces of the services the ledger depends on but does not own."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from app.ledger.models import CheckoutSession, PaymentEvent


@dataclass
class CheckoutItem:
    name: str
    unit_amount: int
    currency: str
    quantity: int = 1
    description: str | None = None


class PaymentGateway(ABC):
    @abstractmethod
    async def create_checkout_session(
        self,
        items: list[CheckoutItem],
        success_url: str | None = None,
        cancel_url: str | None = None,
        customer_email: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CheckoutSession:
        """Open a payable session with the processor."""
        ...

    @abstractmethod
    async def expire_checkout_session(self, session_id: str) -> None:
        """Close a session so it can no longer be paid."""
        ...

    @abstractmethod
    def parse_event(self, payload: bytes, signature: str | None) -> PaymentEvent | None:
        """Verify and parse a webhook delivery; None for event types the ledger ignores."""
        ...


class UserDirectory(ABC):
    @abstractmethod
    async def exists(self, user_id: str) -> bool:
        ...
