import itertools
import json
import os
from types import SimpleNamespace
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Use test DB
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "creditledger_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")

from app.core.background import BestEffortDispatcher  # noqa: E402
from app.core.currencies import Currency  # noqa: E402
from app.core.exceptions import BadRequestError, UnauthorizedError  # noqa: E402
from app.ledger import AccessResolver, Catalog, CreditTransactionManager, ResourcePurchaseManager  # noqa: E402
from app.ledger.collaborators import CheckoutItem, PaymentGateway, UserDirectory  # noqa: E402
from app.ledger.models import CheckoutSession, PaymentEvent  # noqa: E402
from app.ledger.store.memory import InMemoryLedgerStore  # noqa: E402
from app.services.payments import payment_event  # noqa: E402


class FakeGateway(PaymentGateway):
    """Checkout sessions that only exist in memory; signature "valid" passes verification."""

    def __init__(self, fail_create: bool = False, fail_expire: bool = False, fixed_session_id: str | None = None):
        self.fail_create = fail_create
        self.fail_expire = fail_expire
        self.fixed_session_id = fixed_session_id
        self.created: list[dict[str, Any]] = []
        self.expired: list[str] = []
        self._ids = itertools.count(1)

    async def create_checkout_session(
        self,
        items: list[CheckoutItem],
        success_url: str | None = None,
        cancel_url: str | None = None,
        customer_email: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CheckoutSession:
        if self.fail_create:
            raise RuntimeError("processor down")
        session_id = self.fixed_session_id or f"cs_test_{next(self._ids)}"
        self.created.append({"session_id": session_id, "items": items, "customer_email": customer_email})
        return CheckoutSession(session_id=session_id, url=f"https://checkout.test/{session_id}")

    async def expire_checkout_session(self, session_id: str) -> None:
        if self.fail_expire:
            raise RuntimeError("processor down")
        self.expired.append(session_id)

    def parse_event(self, payload: bytes, signature: str | None) -> PaymentEvent | None:
        if signature != "valid":
            raise BadRequestError("Invalid webhook signature")
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise BadRequestError("Malformed webhook payload") from e
        return payment_event(event["type"], event["data"]["object"])


class FakeDirectory(UserDirectory):
    def __init__(self) -> None:
        self.deleted: set[str] = set()

    async def exists(self, user_id: str) -> bool:
        return user_id not in self.deleted


class AuditRecorder:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def __call__(self, user_id, event_type, entity_type, entity_id=None, metadata=None) -> None:
        self.events.append(
            {
                "user_id": user_id,
                "event_type": event_type,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "metadata": metadata or {},
            }
        )

    def types(self) -> list[str]:
        return [e["event_type"] for e in self.events]


def checkout_event(checkout_ref: str, event_type: str = "checkout.session.completed", payment_status: str = "paid") -> bytes:
    return json.dumps(
        {
            "id": "evt_test",
            "type": event_type,
            "data": {"object": {"id": checkout_ref, "object": "checkout.session", "payment_status": payment_status}},
        }
    ).encode()


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def audit() -> AuditRecorder:
    return AuditRecorder()


@pytest.fixture
def dispatcher() -> BestEffortDispatcher:
    return BestEffortDispatcher()


@pytest.fixture
def credit_manager(store, gateway, directory, dispatcher, audit) -> CreditTransactionManager:
    return CreditTransactionManager(store, gateway, directory, dispatcher=dispatcher, audit=audit)


@pytest.fixture
def purchase_manager(store) -> ResourcePurchaseManager:
    return ResourcePurchaseManager(store)


@pytest.fixture
def access(store) -> AccessResolver:
    return AccessResolver(store)


@pytest.fixture
def catalog(store) -> Catalog:
    return Catalog(store)


@pytest_asyncio.fixture
async def package(catalog):
    return await catalog.create_package(100, 500, Currency.USD, name="Starter", package_id="pkg_100")


async def fund(manager: CreditTransactionManager, user_id: str, package_id: str = "pkg_100") -> None:
    """Top up user_id through a full checkout + success notification."""
    from app.ledger.models import TransactionStatus
    out = await manager.initiate(user_id, package_id)
    await manager.apply_notification(out.transaction.checkout_ref, TransactionStatus.SUCCEEDED)


def _fake_user(authorization: str | None):
    # "Bearer <user-id>"; ids starting with "admin" get the admin role
    if not authorization or not authorization.startswith("Bearer "):
        return None
    user_id = authorization.split(" ", 1)[1]
    role = "admin" if user_id.startswith("admin") else "user"
    return SimpleNamespace(id=user_id, email=f"{user_id}@example.com", role=role, session_version=0)


@pytest_asyncio.fixture
async def client(store, gateway, directory, dispatcher, audit) -> AsyncGenerator[AsyncClient, None]:
    from fastapi import Header

    from app import deps
    from app.main import app

    async def current_user(authorization: str | None = Header(None)):
        user = _fake_user(authorization)
        if user is None:
            raise UnauthorizedError("No credentials")
        return user

    async def optional_user(authorization: str | None = Header(None)):
        return _fake_user(authorization)

    app.state.ledger_store = store
    app.state.payment_gateway = gateway
    app.state.dispatcher = dispatcher
    app.dependency_overrides[deps.get_current_user] = current_user
    app.dependency_overrides[deps.get_optional_user] = optional_user
    app.dependency_overrides[deps.get_user_directory] = lambda: directory
    app.dependency_overrides[deps.get_audit] = lambda: audit
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
