"""Ledger records. Relations are by id only; the store resolves them."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.core.currencies import Currency


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    EXPIRED = "expired"


class UserBalance(BaseModel):
    user_id: str
    credits: int = Field(default=0, ge=0)
    updated_at: datetime | None = None


class CreditPackage(BaseModel):
    model_config = ConfigDict(frozen=True)

    package_id: str
    name: str = ""
    credits: int = Field(gt=0)
    unit_amount: int = Field(gt=0)  # minor currency unit
    currency: Currency
    created_at: datetime = Field(default_factory=datetime.utcnow)


class CreditTransaction(BaseModel):
    checkout_ref: str
    user_id: str
    package_id: str | None = None
    credits: int = Field(gt=0)
    unit_amount: int = Field(gt=0)
    currency: Currency
    quantity: int = Field(default=1, gt=0)
    status: TransactionStatus = TransactionStatus.PENDING
    checkout_url: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Resource(BaseModel):
    resource_id: str
    cost: int = Field(default=0, ge=0)
    name: str
    description: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_free(self) -> bool:
        return self.cost == 0

    def public_view(self) -> dict[str, Any]:
        """Metadata without the payload."""
        return self.model_dump(exclude={"payload"})


class ResourcePurchase(BaseModel):
    resource_id: str
    user_id: str
    credits_spent: int = Field(ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class PaymentEvent(BaseModel):
    """Already-verified provider notification, reduced to what the ledger needs."""
    checkout_ref: str
    type: str
    status: TransactionStatus | None = None  # None: event carries no status change


class CheckoutSession(BaseModel):
    session_id: str
    url: str | None = None


class InitiatedCheckout(BaseModel):
    transaction: CreditTransaction
    checkout_url: str | None = None
