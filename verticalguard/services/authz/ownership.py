from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.domain.models import Policy, PolicyApprovalRequest


logger = logging.getLogger(__name__)

OwnerLookup = Callable[[AsyncSession, str], Awaitable[str | None]]


def column_owner_lookup(model: Any, owner_column: Any) -> OwnerLookup:
    # Build a lookup that reads the owner id straight off the resource's own row.
    async def _lookup(session: AsyncSession, resource_id: str) -> str | None:
        result = await session.execute(select(owner_column).where(model.id == resource_id))
        return result.scalar_one_or_none()

    return _lookup


class OwnershipRegistry:
    """Per-resource-type owner lookups.

    Each resource type registers how to find its owner, so an ownership check
    always reads the owning entity itself. Unregistered types are never owned.
    """

    def __init__(self) -> None:
        self._lookups: dict[str, OwnerLookup] = {}

    def register(self, resource_type: str, lookup: OwnerLookup) -> None:
        self._lookups[resource_type] = lookup

    def registered_types(self) -> list[str]:
        return sorted(self._lookups)

    async def owner_of(self, session: AsyncSession, *, resource_type: str, resource_id: str) -> str | None:
        lookup = self._lookups.get(resource_type)
        if lookup is None:
            return None
        return await lookup(session, resource_id)

    async def is_owner(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        resource_type: str,
        resource_id: str,
        is_super_admin: bool = False,
    ) -> bool:
        if is_super_admin:
            return True
        if resource_type not in self._lookups:
            logger.debug("ownership_lookup_missing resource_type=%s", resource_type)
            return False
        owner_id = await self.owner_of(session, resource_type=resource_type, resource_id=resource_id)
        return owner_id is not None and owner_id == user_id


def default_registry() -> OwnershipRegistry:
    registry = OwnershipRegistry()
    registry.register("policy", column_owner_lookup(Policy, Policy.created_by))
    registry.register(
        "approval_request",
        column_owner_lookup(PolicyApprovalRequest, PolicyApprovalRequest.requested_by),
    )
    return registry
