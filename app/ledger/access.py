"""Resource access checks."""

from typing import Any

from app.core.exceptions import NotFoundError
from app.ledger.models import Resource
from app.ledger.store.base import LedgerStore


class AccessResolver:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    async def can_access(self, user_id: str | None, resource_id: str) -> bool:
        """Free resources are open to everyone; paid ones to their buyers. Anonymous callers own nothing."""
        resource = await self._resource(resource_id)
        return await self._allowed(user_id, resource)

    async def view(self, user_id: str | None, resource_id: str) -> dict[str, Any]:
        """Resource with its payload when accessible, public metadata otherwise."""
        resource = await self._resource(resource_id)
        if await self._allowed(user_id, resource):
            return {**resource.model_dump(), "accessible": True}
        return {**resource.public_view(), "accessible": False}

    async def _resource(self, resource_id: str) -> Resource:
        resource = await self.store.get_resource(resource_id)
        if resource is None:
            raise NotFoundError("Resource not found")
        return resource

    async def _allowed(self, user_id: str | None, resource: Resource) -> bool:
        if resource.is_free:
            return True
        if not user_id:
            return False
        return await self.store.get_purchase(resource.resource_id, user_id) is not None
