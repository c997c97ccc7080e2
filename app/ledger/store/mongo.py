"""MongoDB ledger store on Motor.

Guarded writes are single-document conditional updates (``find_one_and_update``
with the precondition in the filter). The two-record operations run inside a
multi-document transaction when the deployment supports one (replica set or
mongos) and fall back to a compensating write otherwise.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, IndexModel, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ExecutionTimeout, PyMongoError

from app.core.exceptions import ConcurrencyConflictError, SettlementUnreconciledError, StorageUnavailableError
from app.core.logging import get_logger
from app.ledger.models import (
    CreditPackage,
    CreditTransaction,
    Resource,
    ResourcePurchase,
    TransactionStatus,
    UserBalance,
)
from app.ledger.store.base import DuplicateRecordError, LedgerStore

log = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

BALANCES = "user_balances"
PACKAGES = "credit_packages"
TRANSACTIONS = "credit_transactions"
RESOURCES = "resources"
PURCHASES = "resource_purchases"

INDEXES: dict[str, list[IndexModel]] = {
    BALANCES: [IndexModel([("user_id", ASCENDING)], unique=True)],
    PACKAGES: [IndexModel([("package_id", ASCENDING)], unique=True)],
    TRANSACTIONS: [
        IndexModel([("checkout_ref", ASCENDING)], unique=True),
        IndexModel([("user_id", ASCENDING), ("checkout_ref", ASCENDING)], unique=True),
        IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
    ],
    RESOURCES: [
        IndexModel([("resource_id", ASCENDING)], unique=True),
        IndexModel([("created_at", DESCENDING)]),
    ],
    PURCHASES: [
        IndexModel([("resource_id", ASCENDING), ("user_id", ASCENDING)], unique=True),
        IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
    ],
}


# Compensating-mode purchases are written with settled=False and only become
# visible once their debit has landed.
SETTLED = {"settled": {"$ne": False}}


class _Rollback(Exception):
    """Abort the surrounding transaction without surfacing an error."""


def _to_doc(model: BaseModel) -> dict[str, Any]:
    data = model.model_dump()
    return {k: v.value if isinstance(v, Enum) else v for k, v in data.items()}


def _from_doc(cls: type[M], doc: dict[str, Any] | None) -> M | None:
    if doc is None:
        return None
    doc = dict(doc)
    doc.pop("_id", None)
    doc.pop("settled", None)
    return cls.model_validate(doc)


def _statuses(values: Iterable[TransactionStatus]) -> list[str]:
    return [TransactionStatus(v).value for v in values]


async def detect_transaction_support(client: AsyncIOMotorClient) -> bool:
    """Multi-document transactions need a replica set member or a mongos router."""
    try:
        hello = await client.admin.command("hello")
    except ConnectionFailure as e:
        raise StorageUnavailableError() from e
    return bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"


class MongoLedgerStore(LedgerStore):
    def __init__(
        self,
        client: AsyncIOMotorClient,
        database: AsyncIOMotorDatabase,
        supports_transactions: bool = False,
    ) -> None:
        self._client = client
        self._db = database
        self.supports_transactions = supports_transactions
        self._balances = database[BALANCES]
        self._packages = database[PACKAGES]
        self._transactions = database[TRANSACTIONS]
        self._resources = database[RESOURCES]
        self._purchases = database[PURCHASES]

    @classmethod
    async def create(
        cls,
        client: AsyncIOMotorClient,
        database: AsyncIOMotorDatabase,
        transactions: str = "auto",
    ) -> "MongoLedgerStore":
        """Build the store, resolve transaction support and make sure indexes exist."""
        mode = (transactions or "auto").lower()
        if mode in ("on", "true", "1"):
            supported = True
        elif mode in ("off", "false", "0"):
            supported = False
        else:
            supported = await detect_transaction_support(client)
        store = cls(client, database, supports_transactions=supported)
        await store.ensure_indexes()
        log.info("ledger_store_ready", backend="mongo", transactions=supported)
        return store

    async def ensure_indexes(self) -> None:
        async with self._translate_errors():
            for name, indexes in INDEXES.items():
                await self._db[name].create_indexes(indexes)

    @asynccontextmanager
    async def _translate_errors(self):
        try:
            yield
        except (ConnectionFailure, ExecutionTimeout) as e:
            log.warning("storage_unavailable", error=str(e))
            raise StorageUnavailableError() from e
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            if e.has_error_label("TransientTransactionError"):
                raise ConcurrencyConflictError() from e
            raise

    @asynccontextmanager
    async def _transaction(self):
        async with self._translate_errors():
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    yield session

    # Balances

    async def get_balance(self, user_id: str) -> UserBalance | None:
        async with self._translate_errors():
            doc = await self._balances.find_one({"user_id": user_id})
        return _from_doc(UserBalance, doc)

    async def ensure_balance(self, user_id: str) -> UserBalance:
        update = {"$setOnInsert": {"user_id": user_id, "credits": 0, "updated_at": datetime.utcnow()}}
        doc = await self._upsert_balance(user_id, update)
        return _from_doc(UserBalance, doc)

    async def credit_balance(self, user_id: str, amount: int, session=None) -> UserBalance:
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        update = {"$inc": {"credits": amount}, "$set": {"updated_at": datetime.utcnow()}}
        doc = await self._upsert_balance(user_id, update, session=session)
        return _from_doc(UserBalance, doc)

    async def _upsert_balance(self, user_id: str, update: dict, session=None) -> dict:
        # Two first-time upserts for the same user can race on the unique index; the loser retries as an update.
        for attempt in range(2):
            try:
                async with self._translate_errors():
                    return await self._balances.find_one_and_update(
                        {"user_id": user_id},
                        update,
                        upsert=True,
                        return_document=ReturnDocument.AFTER,
                        session=session,
                    )
            except DuplicateKeyError:
                if attempt or session is not None:
                    raise ConcurrencyConflictError(details={"user_id": user_id})
        raise ConcurrencyConflictError(details={"user_id": user_id})

    async def debit_balance(self, user_id: str, amount: int, session=None) -> UserBalance | None:
        if amount < 0:
            raise ValueError("debit amount must not be negative")
        async with self._translate_errors():
            doc = await self._balances.find_one_and_update(
                {"user_id": user_id, "credits": {"$gte": amount}},
                {"$inc": {"credits": -amount}, "$set": {"updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        return _from_doc(UserBalance, doc)

    # Credit packages

    async def insert_package(self, package: CreditPackage) -> CreditPackage:
        await self._insert(self._packages, PACKAGES, package, {"package_id": package.package_id})
        return package

    async def get_package(self, package_id: str) -> CreditPackage | None:
        async with self._translate_errors():
            doc = await self._packages.find_one({"package_id": package_id})
        return _from_doc(CreditPackage, doc)

    async def list_packages(self) -> list[CreditPackage]:
        async with self._translate_errors():
            docs = await self._packages.find({}).sort("credits", ASCENDING).to_list(length=None)
        return [_from_doc(CreditPackage, d) for d in docs]

    # Credit transactions

    async def insert_transaction(self, transaction: CreditTransaction) -> CreditTransaction:
        await self._insert(self._transactions, TRANSACTIONS, transaction, {"checkout_ref": transaction.checkout_ref})
        return transaction

    async def get_transaction(self, checkout_ref: str) -> CreditTransaction | None:
        async with self._translate_errors():
            doc = await self._transactions.find_one({"checkout_ref": checkout_ref})
        return _from_doc(CreditTransaction, doc)

    async def list_transactions(self, user_id: str, limit: int, offset: int) -> list[CreditTransaction]:
        async with self._translate_errors():
            docs = (
                await self._transactions.find({"user_id": user_id})
                .sort("created_at", DESCENDING)
                .skip(offset)
                .limit(limit)
                .to_list(length=limit)
            )
        return [_from_doc(CreditTransaction, d) for d in docs]

    async def transition_transaction(
        self,
        checkout_ref: str,
        from_statuses: Iterable[TransactionStatus],
        to_status: TransactionStatus,
        session=None,
        return_before: bool = False,
    ) -> CreditTransaction | None:
        async with self._translate_errors():
            doc = await self._transactions.find_one_and_update(
                {"checkout_ref": checkout_ref, "status": {"$in": _statuses(from_statuses)}},
                {"$set": {"status": TransactionStatus(to_status).value, "updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.BEFORE if return_before else ReturnDocument.AFTER,
                session=session,
            )
        return _from_doc(CreditTransaction, doc)

    async def settle_transaction(
        self,
        checkout_ref: str,
        from_statuses: Iterable[TransactionStatus],
    ) -> CreditTransaction | None:
        from_statuses = list(from_statuses)
        if self.supports_transactions:
            async with self._transaction() as session:
                tx = await self.transition_transaction(
                    checkout_ref, from_statuses, TransactionStatus.SUCCEEDED, session=session
                )
                if tx is None:
                    return None
                await self.credit_balance(tx.user_id, tx.credits, session=session)
            return tx

        before = await self.transition_transaction(
            checkout_ref, from_statuses, TransactionStatus.SUCCEEDED, return_before=True
        )
        if before is None:
            return None
        try:
            await self.credit_balance(before.user_id, before.credits)
        except Exception as e:
            # The failed $inc may still have landed server side; both outcomes get reported.
            restored = await self._restore_status(checkout_ref, before.status)
            raise SettlementUnreconciledError(checkout_ref, before.user_id, before.credits, restored=restored) from e
        return before.model_copy(update={"status": TransactionStatus.SUCCEEDED, "updated_at": datetime.utcnow()})

    async def _restore_status(self, checkout_ref: str, status: TransactionStatus) -> bool:
        """Undo a status flip whose credit failed, so a redelivered notification can settle it again."""
        try:
            restored = await self.transition_transaction(checkout_ref, [TransactionStatus.SUCCEEDED], status)
        except Exception as e:
            log.error(
                "settle_restore_failed",
                checkout_ref=checkout_ref,
                restore_to=status.value,
                error=str(e),
                needs_attention=True,
            )
            return False
        log.warning("settle_compensated", checkout_ref=checkout_ref, restored_status=status.value)
        return restored is not None

    # Resources

    async def insert_resource(self, resource: Resource) -> Resource:
        await self._insert(self._resources, RESOURCES, resource, {"resource_id": resource.resource_id})
        return resource

    async def get_resource(self, resource_id: str) -> Resource | None:
        async with self._translate_errors():
            doc = await self._resources.find_one({"resource_id": resource_id})
        return _from_doc(Resource, doc)

    async def list_resources(self, limit: int, offset: int) -> list[Resource]:
        async with self._translate_errors():
            docs = (
                await self._resources.find({})
                .sort("created_at", DESCENDING)
                .skip(offset)
                .limit(limit)
                .to_list(length=limit)
            )
        return [_from_doc(Resource, d) for d in docs]

    # Purchases

    async def get_purchase(self, resource_id: str, user_id: str) -> ResourcePurchase | None:
        async with self._translate_errors():
            doc = await self._purchases.find_one({"resource_id": resource_id, "user_id": user_id, **SETTLED})
        return _from_doc(ResourcePurchase, doc)

    async def list_purchases(self, user_id: str, limit: int, offset: int) -> list[ResourcePurchase]:
        async with self._translate_errors():
            docs = (
                await self._purchases.find({"user_id": user_id, **SETTLED})
                .sort("created_at", DESCENDING)
                .skip(offset)
                .limit(limit)
                .to_list(length=limit)
            )
        return [_from_doc(ResourcePurchase, d) for d in docs]

    async def record_purchase(self, purchase: ResourcePurchase) -> tuple[ResourcePurchase, UserBalance] | None:
        key = {"resource_id": purchase.resource_id, "user_id": purchase.user_id}
        if self.supports_transactions:
            try:
                async with self._transaction() as session:
                    await self._insert(self._purchases, PURCHASES, purchase, key, session=session)
                    balance = await self.debit_balance(purchase.user_id, purchase.credits_spent, session=session)
                    if balance is None:
                        raise _Rollback()
            except _Rollback:
                return None
            return purchase, balance

        await self._insert(self._purchases, PURCHASES, purchase, key, pending=True)
        try:
            balance = await self.debit_balance(purchase.user_id, purchase.credits_spent)
        except Exception:
            await self._remove_purchase(key)
            raise
        if balance is None:
            await self._remove_purchase(key)
            return None
        await self._mark_settled(purchase, key)
        return purchase, balance

    async def _mark_settled(self, purchase: ResourcePurchase, key: dict) -> None:
        try:
            async with self._translate_errors():
                await self._purchases.update_one({**key, "settled": False}, {"$set": {"settled": True}})
        except Exception:
            await self._refund_purchase(purchase, key)
            raise

    async def _refund_purchase(self, purchase: ResourcePurchase, key: dict) -> None:
        try:
            if purchase.credits_spent:
                await self.credit_balance(purchase.user_id, purchase.credits_spent)
            await self._remove_purchase(key)
        except Exception as e:
            log.error(
                "purchase_unreconciled",
                credits_spent=purchase.credits_spent,
                error=str(e),
                needs_attention=True,
                **key,
            )
            raise

    async def _remove_purchase(self, key: dict) -> None:
        async with self._translate_errors():
            await self._purchases.delete_one(key)
        log.info("purchase_compensated", **key)

    async def _insert(
        self, collection, name: str, model: BaseModel, key: dict, session=None, pending: bool = False
    ) -> None:
        doc = _to_doc(model)
        if pending:
            doc["settled"] = False
        try:
            async with self._translate_errors():
                await collection.insert_one(doc, session=session)
        except DuplicateKeyError as e:
            raise DuplicateRecordError(name, key) from e

    async def close(self) -> None:
        self._client.close()
