"""Credit packages and resources on offer."""

import uuid
from datetime import datetime
from typing import Any

from app.core.currencies import Currency
from app.core.exceptions import ConflictError
from app.core.logging import get_logger
from app.ledger.models import CreditPackage, Resource
from app.ledger.store.base import DuplicateRecordError, LedgerStore

log = get_logger(__name__)


class Catalog:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    async def create_package(
        self,
        credits: int,
        unit_amount: int,
        currency: Currency | str,
        name: str = "",
        package_id: str | None = None,
    ) -> CreditPackage:
        package = CreditPackage(
            package_id=package_id or str(uuid.uuid4()),
            name=name,
            credits=credits,
            unit_amount=unit_amount,
            currency=currency,
        )
        try:
            await self.store.insert_package(package)
        except DuplicateRecordError as e:
            raise ConflictError("Credit package already exists", details=e.key) from e
        log.info("package_created", package_id=package.package_id, credits=credits, unit_amount=unit_amount)
        return package

    async def list_packages(self) -> list[CreditPackage]:
        return await self.store.list_packages()

    async def create_resource(
        self,
        name: str,
        cost: int = 0,
        description: str | None = None,
        payload: dict[str, Any] | None = None,
        resource_id: str | None = None,
    ) -> Resource:
        now = datetime.utcnow()
        resource = Resource(
            resource_id=resource_id or str(uuid.uuid4()),
            cost=cost,
            name=name,
            description=description,
            payload=payload or {},
            created_at=now,
            updated_at=now,
        )
        try:
            await self.store.insert_resource(resource)
        except DuplicateRecordError as e:
            raise ConflictError("Resource already exists", details=e.key) from e
        log.info("resource_created", resource_id=resource.resource_id, cost=cost)
        return resource

    async def list_resources(self, limit: int = 50, offset: int = 0) -> list[Resource]:
        return await self.store.list_resources(limit, offset)
