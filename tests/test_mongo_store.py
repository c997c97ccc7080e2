"""MongoLedgerStore against a live server. Skipped when MONGODB_URI is unreachable."""

import asyncio
import os
import uuid

import pytest
import pytest_asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from app.core.currencies import Currency
from app.core.exceptions import ConcurrencyConflictError
from app.ledger import Catalog, ResourcePurchaseManager
from app.ledger.models import CreditTransaction, ResourcePurchase, TransactionStatus
from app.ledger.store.base import DuplicateRecordError
from app.ledger.store.mongo import MongoLedgerStore, detect_transaction_support

pytestmark = [pytest.mark.asyncio, pytest.mark.mongo]


async def _connect() -> AsyncIOMotorClient:
    client = AsyncIOMotorClient(
        os.environ.get("MONGODB_URI", "mongodb://localhost:27017"),
        serverSelectionTimeoutMS=1000,
        tz_aware=False,
    )
    try:
        await client.admin.command("ping")
    except PyMongoError:
        client.close()
        pytest.skip("MongoDB not reachable")
    return client


@pytest_asyncio.fixture(params=["compensating", "transactional"])
async def mongo_store(request):
    client = await _connect()
    transactional = request.param == "transactional"
    if transactional and not await detect_transaction_support(client):
        client.close()
        pytest.skip("MongoDB deployment has no multi-document transactions")
    db_name = f"creditledger_test_{uuid.uuid4().hex[:8]}"
    store = await MongoLedgerStore.create(client, client[db_name], transactions="on" if transactional else "off")
    yield store
    await client.drop_database(db_name)
    client.close()


def _transaction(ref: str, user_id: str = "u1", credits: int = 100) -> CreditTransaction:
    return CreditTransaction(
        checkout_ref=ref,
        user_id=user_id,
        package_id="pkg_100",
        credits=credits,
        unit_amount=500,
        currency=Currency.USD,
    )


async def test_debit_is_guarded(mongo_store):
    await mongo_store.credit_balance("u1", 50)
    assert (await mongo_store.debit_balance("u1", 30)).credits == 20
    assert await mongo_store.debit_balance("u1", 30) is None
    assert (await mongo_store.get_balance("u1")).credits == 20
    assert await mongo_store.debit_balance("nobody", 1) is None


async def test_ensure_balance_creates_once(mongo_store):
    first = await mongo_store.ensure_balance("u1")
    assert first.credits == 0
    await mongo_store.credit_balance("u1", 5)
    assert (await mongo_store.ensure_balance("u1")).credits == 5


async def test_concurrent_first_credits_land_on_one_row(mongo_store):
    await asyncio.gather(*[mongo_store.credit_balance("u1", 10) for _ in range(5)])
    assert (await mongo_store.get_balance("u1")).credits == 50


async def test_duplicate_checkout_ref_rejected(mongo_store):
    await mongo_store.insert_transaction(_transaction("cs_1"))
    with pytest.raises(DuplicateRecordError):
        await mongo_store.insert_transaction(_transaction("cs_1", user_id="u2"))


async def test_transition_is_compare_and_swap(mongo_store):
    await mongo_store.insert_transaction(_transaction("cs_1"))
    expired = await mongo_store.transition_transaction("cs_1", [TransactionStatus.PENDING], TransactionStatus.EXPIRED)
    assert expired.status == TransactionStatus.EXPIRED
    assert (
        await mongo_store.transition_transaction("cs_1", [TransactionStatus.PENDING], TransactionStatus.EXPIRED)
        is None
    )


async def test_settle_credits_exactly_once(mongo_store):
    await mongo_store.insert_transaction(_transaction("cs_1"))
    results = await asyncio.gather(
        *[mongo_store.settle_transaction("cs_1", [TransactionStatus.PENDING]) for _ in range(5)],
        return_exceptions=True,
    )
    # transactional losers see a write conflict instead of a failed precondition
    assert all(r is None or isinstance(r, (CreditTransaction, ConcurrencyConflictError)) for r in results)
    assert sum(1 for r in results if isinstance(r, CreditTransaction)) == 1
    assert (await mongo_store.get_balance("u1")).credits == 100
    assert (await mongo_store.get_transaction("cs_1")).status == TransactionStatus.SUCCEEDED


async def test_record_purchase_rolls_back_when_balance_short(mongo_store):
    await mongo_store.credit_balance("u1", 10)
    purchase = ResourcePurchase(resource_id="r1", user_id="u1", credits_spent=40)
    assert await mongo_store.record_purchase(purchase) is None
    assert await mongo_store.get_purchase("r1", "u1") is None
    assert (await mongo_store.get_balance("u1")).credits == 10


async def test_record_purchase_duplicate_charges_once(mongo_store):
    await mongo_store.credit_balance("u1", 100)
    purchase = ResourcePurchase(resource_id="r1", user_id="u1", credits_spent=40)
    recorded, balance = await mongo_store.record_purchase(purchase)
    assert balance.credits == 60
    with pytest.raises(DuplicateRecordError):
        await mongo_store.record_purchase(ResourcePurchase(resource_id="r1", user_id="u1", credits_spent=40))
    assert (await mongo_store.get_balance("u1")).credits == 60
    stored = await mongo_store.get_purchase("r1", "u1")
    assert (stored.user_id, stored.credits_spent) == (recorded.user_id, recorded.credits_spent)


async def test_concurrent_purchases_through_manager(mongo_store):
    await mongo_store.credit_balance("u1", 100)
    await Catalog(mongo_store).create_resource("Guide", cost=30, resource_id="r1")
    manager = ResourcePurchaseManager(mongo_store)
    results = await asyncio.gather(*[manager.purchase("u1", "r1") for _ in range(6)], return_exceptions=True)
    assert all(isinstance(r, (ResourcePurchase, ConcurrencyConflictError)) for r in results)
    assert (await mongo_store.get_balance("u1")).credits == 70
    assert len(await mongo_store.list_purchases("u1", 10, 0)) == 1
