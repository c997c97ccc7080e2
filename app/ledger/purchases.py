"""Spending credits on resources: one purchase and one debit per (user, resource)."""

from app.core.exceptions import ConcurrencyConflictError, InsufficientBalanceError, NotFoundError
from app.core.logging import get_logger
from app.ledger.models import ResourcePurchase
from app.ledger.store.base import DuplicateRecordError, LedgerStore

log = get_logger(__name__)


class ResourcePurchaseManager:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    async def purchase(self, user_id: str, resource_id: str) -> ResourcePurchase:
        """Grant access to a resource, charging its cost once.

        Buying something already owned returns the existing purchase. The insert of
        the purchase record is the exclusivity gate: of several concurrent callers
        exactly one writes it and is charged, the others get that same record back.
        """
        resource = await self.store.get_resource(resource_id)
        if resource is None:
            raise NotFoundError("Resource not found")

        existing = await self.store.get_purchase(resource_id, user_id)
        if existing is not None:
            return existing

        balance = await self.store.ensure_balance(user_id)
        if balance.credits < resource.cost:
            raise InsufficientBalanceError(required=resource.cost, available=balance.credits)

        purchase = ResourcePurchase(resource_id=resource_id, user_id=user_id, credits_spent=resource.cost)
        try:
            result = await self.store.record_purchase(purchase)
        except DuplicateRecordError as e:
            winner = await self.store.get_purchase(resource_id, user_id)
            if winner is None:
                # The other writer is still charging or rolled back; the caller may retry.
                raise ConcurrencyConflictError(details={"resource_id": resource_id}) from e
            log.info("purchase_race_lost", resource_id=resource_id, user_id=user_id)
            return winner

        if result is None:
            # Balance moved between the check and the guarded debit.
            current = await self.store.get_balance(user_id)
            available = current.credits if current else 0
            log.info("purchase_rejected", resource_id=resource_id, user_id=user_id, cost=resource.cost, available=available)
            raise InsufficientBalanceError(required=resource.cost, available=available)

        recorded, balance_after = result
        log.info(
            "resource_purchased",
            resource_id=resource_id,
            user_id=user_id,
            credits_spent=recorded.credits_spent,
            balance_after=balance_after.credits,
        )
        return recorded

    async def list_purchases(self, user_id: str, limit: int = 50, offset: int = 0) -> list[ResourcePurchase]:
        return await self.store.list_purchases(user_id, limit, offset)
