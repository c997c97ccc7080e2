"""Process-local ledger store.

Every operation runs under one asyncio lock, so each named guarded operation is
atomic with respect to every other. Used by the test suite and for running the
API without MongoDB.
"""

import asyncio
from datetime import datetime
from typing import Iterable

from app.ledger.models import (
    CreditPackage,
    CreditTransaction,
    Resource,
    ResourcePurchase,
    TransactionStatus,
    UserBalance,
)
from app.ledger.store.base import DuplicateRecordError, LedgerStore


class InMemoryLedgerStore(LedgerStore):
    supports_transactions = True

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.balances: dict[str, UserBalance] = {}
        self.packages: dict[str, CreditPackage] = {}
        self.transactions: dict[str, CreditTransaction] = {}
        self.resources: dict[str, Resource] = {}
        self.purchases: dict[tuple[str, str], ResourcePurchase] = {}

    # Balances

    async def get_balance(self, user_id: str) -> UserBalance | None:
        async with self._lock:
            bal = self.balances.get(user_id)
            return bal.model_copy() if bal else None

    async def ensure_balance(self, user_id: str) -> UserBalance:
        async with self._lock:
            bal = self.balances.setdefault(user_id, UserBalance(user_id=user_id, updated_at=datetime.utcnow()))
            return bal.model_copy()

    async def credit_balance(self, user_id: str, amount: int) -> UserBalance:
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        async with self._lock:
            return self._credit(user_id, amount)

    def _credit(self, user_id: str, amount: int) -> UserBalance:
        current = self.balances.get(user_id)
        credits = (current.credits if current else 0) + amount
        self.balances[user_id] = UserBalance(user_id=user_id, credits=credits, updated_at=datetime.utcnow())
        return self.balances[user_id].model_copy()

    async def debit_balance(self, user_id: str, amount: int) -> UserBalance | None:
        if amount < 0:
            raise ValueError("debit amount must not be negative")
        async with self._lock:
            return self._debit(user_id, amount)

    def _debit(self, user_id: str, amount: int) -> UserBalance | None:
        current = self.balances.get(user_id)
        if current is None or current.credits < amount:
            return None
        self.balances[user_id] = UserBalance(
            user_id=user_id, credits=current.credits - amount, updated_at=datetime.utcnow()
        )
        return self.balances[user_id].model_copy()

    # Credit packages

    async def insert_package(self, package: CreditPackage) -> CreditPackage:
        async with self._lock:
            if package.package_id in self.packages:
                raise DuplicateRecordError("credit_packages", {"package_id": package.package_id})
            self.packages[package.package_id] = package.model_copy()
            return package

    async def get_package(self, package_id: str) -> CreditPackage | None:
        async with self._lock:
            package = self.packages.get(package_id)
            return package.model_copy() if package else None

    async def list_packages(self) -> list[CreditPackage]:
        async with self._lock:
            return [p.model_copy() for p in sorted(self.packages.values(), key=lambda p: p.credits)]

    # Credit transactions

    async def insert_transaction(self, transaction: CreditTransaction) -> CreditTransaction:
        async with self._lock:
            if transaction.checkout_ref in self.transactions:
                raise DuplicateRecordError("credit_transactions", {"checkout_ref": transaction.checkout_ref})
            self.transactions[transaction.checkout_ref] = transaction.model_copy()
            return transaction

    async def get_transaction(self, checkout_ref: str) -> CreditTransaction | None:
        async with self._lock:
            tx = self.transactions.get(checkout_ref)
            return tx.model_copy() if tx else None

    async def list_transactions(self, user_id: str, limit: int, offset: int) -> list[CreditTransaction]:
        async with self._lock:
            rows = [t for t in self.transactions.values() if t.user_id == user_id]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return [t.model_copy() for t in rows[offset:offset + limit]]

    async def transition_transaction(
        self,
        checkout_ref: str,
        from_statuses: Iterable[TransactionStatus],
        to_status: TransactionStatus,
    ) -> CreditTransaction | None:
        async with self._lock:
            return self._transition(checkout_ref, set(from_statuses), to_status)

    def _transition(
        self,
        checkout_ref: str,
        from_statuses: set[TransactionStatus],
        to_status: TransactionStatus,
    ) -> CreditTransaction | None:
        tx = self.transactions.get(checkout_ref)
        if tx is None or tx.status not in from_statuses:
            return None
        updated = tx.model_copy(update={"status": to_status, "updated_at": datetime.utcnow()})
        self.transactions[checkout_ref] = updated
        return updated.model_copy()

    async def settle_transaction(
        self,
        checkout_ref: str,
        from_statuses: Iterable[TransactionStatus],
    ) -> CreditTransaction | None:
        async with self._lock:
            tx = self._transition(checkout_ref, set(from_statuses), TransactionStatus.SUCCEEDED)
            if tx is not None:
                self._credit(tx.user_id, tx.credits)
            return tx

    # Resources

    async def insert_resource(self, resource: Resource) -> Resource:
        async with self._lock:
            if resource.resource_id in self.resources:
                raise DuplicateRecordError("resources", {"resource_id": resource.resource_id})
            self.resources[resource.resource_id] = resource.model_copy(deep=True)
            return resource

    async def get_resource(self, resource_id: str) -> Resource | None:
        async with self._lock:
            resource = self.resources.get(resource_id)
            return resource.model_copy(deep=True) if resource else None

    async def list_resources(self, limit: int, offset: int) -> list[Resource]:
        async with self._lock:
            rows = sorted(self.resources.values(), key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in rows[offset:offset + limit]]

    # Purchases

    async def get_purchase(self, resource_id: str, user_id: str) -> ResourcePurchase | None:
        async with self._lock:
            purchase = self.purchases.get((resource_id, user_id))
            return purchase.model_copy() if purchase else None

    async def list_purchases(self, user_id: str, limit: int, offset: int) -> list[ResourcePurchase]:
        async with self._lock:
            rows = [p for p in self.purchases.values() if p.user_id == user_id]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return [p.model_copy() for p in rows[offset:offset + limit]]

    async def record_purchase(self, purchase: ResourcePurchase) -> tuple[ResourcePurchase, UserBalance] | None:
        key = (purchase.resource_id, purchase.user_id)
        async with self._lock:
            if key in self.purchases:
                raise DuplicateRecordError("resource_purchases", {"resource_id": key[0], "user_id": key[1]})
            balance = self._debit(purchase.user_id, purchase.credits_spent)
            if balance is None:
                return None
            self.purchases[key] = purchase.model_copy()
            return purchase, balance
