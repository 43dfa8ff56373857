from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Hashable
from weakref import WeakValueDictionary

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.core.errors import (
    AttributeNotFoundError,
    ConflictError,
    DuplicateNameError,
    InvalidInputError,
    UserNotFoundError,
)
from verticalguard.domain.models import (
    ATTRIBUTE_DATA_TYPES,
    ATTRIBUTE_TYPES,
    Attribute,
    ResourceAttribute,
    User,
    UserAttribute,
)
from verticalguard.persistence.repos import attributes as attributes_repo


logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {"display_name", "description", "data_type", "is_active", "metadata_json"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class KeyedLocks:
    # Hand out one asyncio.Lock per key; idle locks are dropped with their last holder.

    def __init__(self) -> None:
        self._locks: WeakValueDictionary[Hashable, asyncio.Lock] = WeakValueDictionary()

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


_assignment_locks = KeyedLocks()


async def create_attribute(
    session: AsyncSession,
    *,
    name: str,
    display_name: str,
    attribute_type: str,
    data_type: str = "string",
    description: str | None = None,
    is_system: bool = False,
    metadata: dict[str, Any] | None = None,
) -> Attribute:
    if attribute_type not in ATTRIBUTE_TYPES:
        raise InvalidInputError(f"Unsupported attribute type: {attribute_type}")
    if data_type not in ATTRIBUTE_DATA_TYPES:
        raise InvalidInputError(f"Unsupported attribute data type: {data_type}")
    if await attributes_repo.get_attribute_by_name(session, name=name) is not None:
        raise DuplicateNameError(f"Attribute with name '{name}' already exists")
    attribute = Attribute(
        name=name,
        display_name=display_name,
        type=attribute_type,
        data_type=data_type,
        description=description,
        is_system=is_system,
        is_active=True,
        metadata_json=metadata or {},
    )
    session.add(attribute)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateNameError(f"Attribute with name '{name}' already exists") from exc
    return attribute


async def update_attribute(
    session: AsyncSession,
    *,
    attribute_id: str,
    updates: dict[str, Any],
) -> Attribute:
    attribute = await attributes_repo.get_attribute(session, attribute_id=attribute_id)
    if attribute is None:
        raise AttributeNotFoundError()
    unknown = set(updates) - _UPDATABLE_FIELDS
    if unknown:
        raise InvalidInputError(f"Attribute fields cannot be updated: {', '.join(sorted(unknown))}")
    if "data_type" in updates and updates["data_type"] not in ATTRIBUTE_DATA_TYPES:
        raise InvalidInputError(f"Unsupported attribute data type: {updates['data_type']}")
    for field, value in updates.items():
        setattr(attribute, field, value)
    await session.commit()
    return attribute


async def delete_attribute(session: AsyncSession, *, attribute_id: str) -> None:
    # Soft delete keeps historical assignments resolvable.
    attribute = await attributes_repo.get_attribute(session, attribute_id=attribute_id)
    if attribute is None:
        raise AttributeNotFoundError()
    attribute.is_active = False
    await session.commit()


async def get_attribute_by_name(session: AsyncSession, *, name: str) -> Attribute:
    attribute = await attributes_repo.get_attribute_by_name(session, name=name, active_only=True)
    if attribute is None:
        raise AttributeNotFoundError(f"Attribute '{name}' not found")
    return attribute


async def list_attributes(
    session: AsyncSession,
    *,
    attribute_type: str | None = None,
    is_active: bool | None = None,
) -> list[Attribute]:
    return await attributes_repo.list_attributes(
        session, attribute_type=attribute_type, is_active=is_active
    )


async def assign_user_attribute(
    session: AsyncSession,
    *,
    user_id: str,
    attribute_name: str,
    value: str,
    valid_until: datetime | None = None,
    assigned_by: str | None = None,
    commit: bool = True,
) -> UserAttribute:
    """Assign ``value`` to a user, retiring whatever assignment was active before.

    The previous row is deactivated and a new active row is inserted, so the
    full history survives. Concurrent assignments of the same pair are
    serialized in-process by a keyed lock and across processes by the partial
    unique index on active rows.
    """
    attribute = await get_attribute_by_name(session, name=attribute_name)
    if await session.get(User, user_id) is None:
        raise UserNotFoundError()
    async with _assignment_locks.get(("user", user_id, attribute.id)):
        await attributes_repo.deactivate_user_attribute(
            session, user_id=user_id, attribute_id=attribute.id
        )
        row = UserAttribute(
            user_id=user_id,
            attribute_id=attribute.id,
            value=value,
            is_active=True,
            valid_from=_utc_now(),
            valid_until=valid_until,
            assigned_by=assigned_by,
        )
        session.add(row)
        await _flush_assignment(session, commit=commit, key=f"user:{user_id}:{attribute_name}")
    return row


async def assign_resource_attribute(
    session: AsyncSession,
    *,
    resource_type: str,
    resource_id: str,
    attribute_name: str,
    value: str,
    valid_until: datetime | None = None,
    assigned_by: str | None = None,
    commit: bool = True,
) -> ResourceAttribute:
    attribute = await get_attribute_by_name(session, name=attribute_name)
    async with _assignment_locks.get(("resource", resource_type, resource_id, attribute.id)):
        await attributes_repo.deactivate_resource_attribute(
            session,
            resource_type=resource_type,
            resource_id=resource_id,
            attribute_id=attribute.id,
        )
        row = ResourceAttribute(
            resource_type=resource_type,
            resource_id=resource_id,
            attribute_id=attribute.id,
            value=value,
            is_active=True,
            valid_from=_utc_now(),
            valid_until=valid_until,
            assigned_by=assigned_by,
        )
        session.add(row)
        await _flush_assignment(
            session, commit=commit, key=f"{resource_type}:{resource_id}:{attribute_name}"
        )
    return row


async def _flush_assignment(session: AsyncSession, *, commit: bool, key: str) -> None:
    try:
        if commit:
            await session.commit()
        else:
            await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        logger.info("attribute_assignment_conflict key=%s", key)
        raise ConflictError("Attribute assignment changed concurrently; retry") from exc


async def remove_user_attribute(session: AsyncSession, *, user_id: str, attribute_name: str) -> None:
    attribute = await attributes_repo.get_attribute_by_name(session, name=attribute_name)
    if attribute is None:
        raise AttributeNotFoundError(f"Attribute '{attribute_name}' not found")
    removed = await attributes_repo.deactivate_user_attribute(
        session, user_id=user_id, attribute_id=attribute.id
    )
    if removed == 0:
        await session.rollback()
        raise AttributeNotFoundError("Attribute assignment not found")
    await session.commit()


async def remove_resource_attribute(
    session: AsyncSession,
    *,
    resource_type: str,
    resource_id: str,
    attribute_name: str,
) -> None:
    attribute = await attributes_repo.get_attribute_by_name(session, name=attribute_name)
    if attribute is None:
        raise AttributeNotFoundError(f"Attribute '{attribute_name}' not found")
    removed = await attributes_repo.deactivate_resource_attribute(
        session,
        resource_type=resource_type,
        resource_id=resource_id,
        attribute_id=attribute.id,
    )
    if removed == 0:
        await session.rollback()
        raise AttributeNotFoundError("Attribute assignment not found")
    await session.commit()


async def get_user_attributes(
    session: AsyncSession,
    *,
    user_id: str,
    now: datetime | None = None,
) -> dict[str, str]:
    rows = await attributes_repo.list_current_user_attributes(
        session, user_id=user_id, now=now or _utc_now()
    )
    return dict(rows)


async def get_resource_attributes(
    session: AsyncSession,
    *,
    resource_type: str,
    resource_id: str,
    now: datetime | None = None,
) -> dict[str, str]:
    rows = await attributes_repo.list_current_resource_attributes(
        session,
        resource_type=resource_type,
        resource_id=resource_id,
        now=now or _utc_now(),
    )
    return dict(rows)


async def bulk_assign_user_attributes(
    session: AsyncSession,
    *,
    user_id: str,
    attributes: dict[str, str],
    assigned_by: str | None = None,
) -> list[UserAttribute]:
    # Resolve every name first so an unknown attribute fails the call before any write.
    for name in attributes:
        await get_attribute_by_name(session, name=name)
    rows = [
        await assign_user_attribute(
            session,
            user_id=user_id,
            attribute_name=name,
            value=value,
            assigned_by=assigned_by,
            commit=False,
        )
        for name, value in attributes.items()
    ]
    await session.commit()
    return rows


async def bulk_assign_resource_attributes(
    session: AsyncSession,
    *,
    resource_type: str,
    resource_id: str,
    attributes: dict[str, str],
    assigned_by: str | None = None,
) -> list[ResourceAttribute]:
    for name in attributes:
        await get_attribute_by_name(session, name=name)
    rows = [
        await assign_resource_attribute(
            session,
            resource_type=resource_type,
            resource_id=resource_id,
            attribute_name=name,
            value=value,
            assigned_by=assigned_by,
            commit=False,
        )
        for name, value in attributes.items()
    ]
    await session.commit()
    return rows


async def get_user_attribute_history(
    session: AsyncSession,
    *,
    user_id: str,
    attribute_name: str,
) -> list[UserAttribute]:
    attribute = await attributes_repo.get_attribute_by_name(session, name=attribute_name)
    if attribute is None:
        raise AttributeNotFoundError(f"Attribute '{attribute_name}' not found")
    return await attributes_repo.list_user_attribute_rows(
        session, user_id=user_id, attribute_id=attribute.id
    )


async def get_resource_attribute_history(
    session: AsyncSession,
    *,
    resource_type: str,
    resource_id: str,
    attribute_name: str,
) -> list[ResourceAttribute]:
    attribute = await attributes_repo.get_attribute_by_name(session, name=attribute_name)
    if attribute is None:
        raise AttributeNotFoundError(f"Attribute '{attribute_name}' not found")
    return await attributes_repo.list_resource_attribute_rows(
        session,
        resource_type=resource_type,
        resource_id=resource_id,
        attribute_id=attribute.id,
    )
