"""Ledger storage interface.

Every write that guards an invariant is its own named method so the guarantee
lives in the store, not in callers:

- ``debit_balance``: decrement only while ``credits >= amount``.
- ``transition_transaction``: compare-and-swap on ``status``.
- ``settle_transaction``: status flip to succeeded plus balance increment, both or neither.
- ``record_purchase``: purchase insert plus guarded debit, both or neither.
"""

from abc import ABC, abstractmethod
from typing import Iterable

from app.ledger.models import (
    CreditPackage,
    CreditTransaction,
    Resource,
    ResourcePurchase,
    TransactionStatus,
    UserBalance,
)


class DuplicateRecordError(Exception):
    """A uniqueness constraint rejected the insert."""

    def __init__(self, collection: str, key: dict):
        self.collection = collection
        self.key = key
        super().__init__(f"duplicate {collection} record: {key}")


class LedgerStore(ABC):
    #: True when record_purchase/settle_transaction run inside a real multi-record transaction
    supports_transactions: bool = False

    # Balances

    @abstractmethod
    async def get_balance(self, user_id: str) -> UserBalance | None:
        ...

    @abstractmethod
    async def ensure_balance(self, user_id: str) -> UserBalance:
        """Return the balance row, creating it with zero credits if absent."""
        ...

    @abstractmethod
    async def credit_balance(self, user_id: str, amount: int) -> UserBalance:
        """Increment (upsert) the balance by a positive amount."""
        ...

    @abstractmethod
    async def debit_balance(self, user_id: str, amount: int) -> UserBalance | None:
        """Decrement only if the balance still covers amount; None when it does not."""
        ...

    # Credit packages

    @abstractmethod
    async def insert_package(self, package: CreditPackage) -> CreditPackage:
        ...

    @abstractmethod
    async def get_package(self, package_id: str) -> CreditPackage | None:
        ...

    @abstractmethod
    async def list_packages(self) -> list[CreditPackage]:
        ...

    # Credit transactions

    @abstractmethod
    async def insert_transaction(self, transaction: CreditTransaction) -> CreditTransaction:
        """Raises DuplicateRecordError when checkout_ref is already recorded."""
        ...

    @abstractmethod
    async def get_transaction(self, checkout_ref: str) -> CreditTransaction | None:
        ...

    @abstractmethod
    async def list_transactions(self, user_id: str, limit: int, offset: int) -> list[CreditTransaction]:
        """Newest first."""
        ...

    @abstractmethod
    async def transition_transaction(
        self,
        checkout_ref: str,
        from_statuses: Iterable[TransactionStatus],
        to_status: TransactionStatus,
    ) -> CreditTransaction | None:
        """Set status only if it is currently one of from_statuses; None if the swap lost."""
        ...

    @abstractmethod
    async def settle_transaction(
        self,
        checkout_ref: str,
        from_statuses: Iterable[TransactionStatus],
    ) -> CreditTransaction | None:
        """Flip to succeeded and credit the owner, atomically; None if the swap lost."""
        ...

    # Resources

    @abstractmethod
    async def insert_resource(self, resource: Resource) -> Resource:
        ...

    @abstractmethod
    async def get_resource(self, resource_id: str) -> Resource | None:
        ...

    @abstractmethod
    async def list_resources(self, limit: int, offset: int) -> list[Resource]:
        ...

    # Purchases

    @abstractmethod
    async def get_purchase(self, resource_id: str, user_id: str) -> ResourcePurchase | None:
        ...

    @abstractmethod
    async def list_purchases(self, user_id: str, limit: int, offset: int) -> list[ResourcePurchase]:
        """Newest first."""
        ...

    @abstractmethod
    async def record_purchase(self, purchase: ResourcePurchase) -> tuple[ResourcePurchase, UserBalance] | None:
        """Insert the purchase and debit credits_spent, atomically.

        Returns None (nothing written) when the balance no longer covers the cost.
        Raises DuplicateRecordError when the (resource_id, user_id) pair already exists.
        """
        ...

    async def close(self) -> None:
        pass
