"""Shared FastAPI dependencies."""

from fastapi import Depends, Header, Request

from app.core.audit import log_event
from app.core.background import BestEffortDispatcher
from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import bind_user_id
from app.core.security import load_access_token, parse_bearer
from app.ledger import AccessResolver, Catalog, CreditTransactionManager, ResourcePurchaseManager
from app.ledger.collaborators import PaymentGateway, UserDirectory
from app.ledger.store.base import LedgerStore
from app.models.user import UserAccount
from app.services.accounts import AccountDirectory, get_user


async def authenticate(credential: str) -> UserAccount:
    """Resolve a bearer credential to its account or fail with UnauthorizedError."""
    payload = load_access_token(credential)
    if not payload:
        raise UnauthorizedError("Invalid or expired token")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid token")
    user = await get_user(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Token invalidated")
    bind_user_id(str(user.id))
    return user


async def get_current_user(authorization: str | None = Header(None)) -> UserAccount:
    """Dependency: Authorization: Bearer <token> -> UserAccount."""
    credential = parse_bearer(authorization)
    if not credential:
        raise UnauthorizedError("No credentials")
    return await authenticate(credential)


async def get_optional_user(authorization: str | None = Header(None)) -> UserAccount | None:
    """Like get_current_user, but anonymous or invalid credentials yield None."""
    credential = parse_bearer(authorization)
    if not credential:
        return None
    try:
        return await authenticate(credential)
    except UnauthorizedError:
        return None


async def require_admin(user: UserAccount = Depends(get_current_user)) -> UserAccount:
    """Dependency: require current user to have role admin."""
    if getattr(user, "role", "user") != "admin":
        raise ForbiddenError("Admin only")
    return user


def get_ledger_store(request: Request) -> LedgerStore:
    return request.app.state.ledger_store


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_dispatcher(request: Request) -> BestEffortDispatcher:
    return request.app.state.dispatcher


def get_user_directory() -> UserDirectory:
    return AccountDirectory()


def get_audit():
    return log_event


def get_credit_manager(
    store: LedgerStore = Depends(get_ledger_store),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    users: UserDirectory = Depends(get_user_directory),
    dispatcher: BestEffortDispatcher = Depends(get_dispatcher),
    audit=Depends(get_audit),
) -> CreditTransactionManager:
    return CreditTransactionManager(store, gateway, users, dispatcher=dispatcher, audit=audit)


def get_purchase_manager(store: LedgerStore = Depends(get_ledger_store)) -> ResourcePurchaseManager:
    return ResourcePurchaseManager(store)


def get_access_resolver(store: LedgerStore = Depends(get_ledger_store)) -> AccessResolver:
    return AccessResolver(store)


def get_catalog(store: LedgerStore = Depends(get_ledger_store)) -> Catalog:
    return Catalog(store)
