from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from verticalguard.core.errors import (
    AttributeNotFoundError,
    DuplicateNameError,
    InvalidInputError,
    UserNotFoundError,
)
from verticalguard.domain.models import ResourceAttribute, UserAttribute
from verticalguard.services import attributes as attribute_store
from verticalguard.tests.utils.seed import create_attribute, create_user


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _count_user_rows(session, *, user_id: str, active_only: bool = False) -> int:
    stmt = select(func.count()).select_from(UserAttribute).where(UserAttribute.user_id == user_id)
    if active_only:
        stmt = stmt.where(UserAttribute.is_active.is_(True))
    return int(await session.scalar(stmt))


@pytest.mark.asyncio
async def test_reassignment_keeps_history_with_one_active_row(session) -> None:
    user = await create_user(session)
    await create_attribute(session, name="user.department")
    await attribute_store.assign_user_attribute(
        session, user_id=user.id, attribute_name="user.department", value="sales"
    )
    await attribute_store.assign_user_attribute(
        session, user_id=user.id, attribute_name="user.department", value="engineering"
    )
    assert await _count_user_rows(session, user_id=user.id) == 2
    assert await _count_user_rows(session, user_id=user.id, active_only=True) == 1
    assert await attribute_store.get_user_attributes(session, user_id=user.id) == {
        "user.department": "engineering"
    }
    history = await attribute_store.get_user_attribute_history(
        session, user_id=user.id, attribute_name="user.department"
    )
    assert [row.value for row in history] == ["engineering", "sales"]


@pytest.mark.asyncio
async def test_expired_rows_are_excluded_even_when_flagged_active(session) -> None:
    user = await create_user(session)
    await create_attribute(session, name="user.clearance")
    await create_attribute(session, name="user.project")
    await create_attribute(session, name="user.shift")
    await attribute_store.assign_user_attribute(
        session,
        user_id=user.id,
        attribute_name="user.clearance",
        value="3",
        valid_until=_utc_now() - timedelta(seconds=1),
    )
    await attribute_store.assign_user_attribute(
        session,
        user_id=user.id,
        attribute_name="user.project",
        value="p-1",
        valid_until=_utc_now() + timedelta(days=1),
    )
    await attribute_store.assign_user_attribute(
        session, user_id=user.id, attribute_name="user.shift", value="night"
    )
    assert await _count_user_rows(session, user_id=user.id, active_only=True) == 3
    assert await attribute_store.get_user_attributes(session, user_id=user.id) == {
        "user.project": "p-1",
        "user.shift": "night",
    }


@pytest.mark.asyncio
async def test_assign_requires_active_definition_and_known_user(session) -> None:
    user = await create_user(session)
    await create_attribute(session, name="user.retired", is_active=False)
    with pytest.raises(AttributeNotFoundError):
        await attribute_store.assign_user_attribute(
            session, user_id=user.id, attribute_name="user.retired", value="x"
        )
    await create_attribute(session, name="user.team")
    with pytest.raises(UserNotFoundError):
        await attribute_store.assign_user_attribute(
            session, user_id="00000000-0000-0000-0000-000000000000", attribute_name="user.team", value="x"
        )


@pytest.mark.asyncio
async def test_remove_deactivates_and_missing_assignment_is_not_found(session) -> None:
    user = await create_user(session)
    await create_attribute(session, name="user.team")
    await attribute_store.assign_user_attribute(
        session, user_id=user.id, attribute_name="user.team", value="blue"
    )
    await attribute_store.remove_user_attribute(session, user_id=user.id, attribute_name="user.team")
    assert await attribute_store.get_user_attributes(session, user_id=user.id) == {}
    assert await _count_user_rows(session, user_id=user.id) == 1
    with pytest.raises(AttributeNotFoundError):
        await attribute_store.remove_user_attribute(session, user_id=user.id, attribute_name="user.team")


def test_keyed_locks_share_one_lock_per_key() -> None:
    locks = attribute_store.KeyedLocks()
    first = locks.get(("user", "u-1", "a-1"))
    assert locks.get(("user", "u-1", "a-1")) is first
    assert locks.get(("user", "u-2", "a-1")) is not first


@pytest.mark.asyncio
async def test_resource_attributes_are_keyed_by_type_and_id(session) -> None:
    await create_attribute(session, name="resource.classification", attribute_type="resource")
    await attribute_store.assign_resource_attribute(
        session,
        resource_type="project",
        resource_id="p-1",
        attribute_name="resource.classification",
        value="confidential",
    )
    await attribute_store.assign_resource_attribute(
        session,
        resource_type="report",
        resource_id="p-1",
        attribute_name="resource.classification",
        value="public",
    )
    assert await attribute_store.get_resource_attributes(
        session, resource_type="project", resource_id="p-1"
    ) == {"resource.classification": "confidential"}
    await attribute_store.remove_resource_attribute(
        session, resource_type="project", resource_id="p-1", attribute_name="resource.classification"
    )
    assert await attribute_store.get_resource_attributes(
        session, resource_type="project", resource_id="p-1"
    ) == {}
    history = await attribute_store.get_resource_attribute_history(
        session, resource_type="report", resource_id="p-1", attribute_name="resource.classification"
    )
    assert len(history) == 1
    total = await session.scalar(select(func.count()).select_from(ResourceAttribute))
    assert total == 2


@pytest.mark.asyncio
async def test_bulk_assign_validates_every_name_before_writing(session) -> None:
    user = await create_user(session)
    await create_attribute(session, name="user.department")
    with pytest.raises(AttributeNotFoundError):
        await attribute_store.bulk_assign_user_attributes(
            session,
            user_id=user.id,
            attributes={"user.department": "ops", "user.unknown": "x"},
        )
    assert await _count_user_rows(session, user_id=user.id) == 0

    await create_attribute(session, name="user.level")
    rows = await attribute_store.bulk_assign_user_attributes(
        session,
        user_id=user.id,
        attributes={"user.department": "ops", "user.level": "2"},
    )
    assert len(rows) == 2
    assert await attribute_store.get_user_attributes(session, user_id=user.id) == {
        "user.department": "ops",
        "user.level": "2",
    }


@pytest.mark.asyncio
async def test_attribute_definitions_lifecycle(session) -> None:
    attribute = await attribute_store.create_attribute(
        session, name="user.region", display_name="Region", attribute_type="user"
    )
    with pytest.raises(DuplicateNameError):
        await attribute_store.create_attribute(
            session, name="user.region", display_name="Region", attribute_type="user"
        )
    with pytest.raises(InvalidInputError):
        await attribute_store.create_attribute(
            session, name="user.other", display_name="Other", attribute_type="group"
        )
    updated = await attribute_store.update_attribute(
        session, attribute_id=attribute.id, updates={"display_name": "Sales region"}
    )
    assert updated.display_name == "Sales region"
    with pytest.raises(InvalidInputError):
        await attribute_store.update_attribute(session, attribute_id=attribute.id, updates={"name": "x"})

    await attribute_store.delete_attribute(session, attribute_id=attribute.id)
    with pytest.raises(AttributeNotFoundError):
        await attribute_store.get_attribute_by_name(session, name="user.region")
    inactive = await attribute_store.list_attributes(session, is_active=False)
    assert [row.name for row in inactive] == ["user.region"]


@pytest.mark.asyncio
async def test_second_active_row_is_rejected_by_the_database(session) -> None:
    user = await create_user(session)
    attribute = await create_attribute(session, name="user.department")
    user_id, attribute_id = user.id, attribute.id
    await attribute_store.assign_user_attribute(
        session, user_id=user_id, attribute_name="user.department", value="sales"
    )
    session.add(UserAttribute(user_id=user_id, attribute_id=attribute_id, value="ops", is_active=True))
    with pytest.raises(IntegrityError):
        await session.flush()
    await session.rollback()

    # Inactive history rows for the same pair are unrestricted.
    session.add(UserAttribute(user_id=user_id, attribute_id=attribute_id, value="old", is_active=False))
    await session.commit()
    assert await _count_user_rows(session, user_id=user_id) == 2
    assert await _count_user_rows(session, user_id=user_id, active_only=True) == 1


@pytest.mark.asyncio
async def test_concurrent_assignments_leave_one_active_row(session, session_factory) -> None:
    user = await create_user(session)
    await create_attribute(session, name="user.department")
    user_id = user.id

    async def _assign(value: str) -> None:
        async with session_factory() as own_session:
            await attribute_store.assign_user_attribute(
                own_session, user_id=user_id, attribute_name="user.department", value=value
            )

    await asyncio.gather(_assign("sales"), _assign("engineering"))

    assert await _count_user_rows(session, user_id=user_id) == 2
    assert await _count_user_rows(session, user_id=user_id, active_only=True) == 1
    current = await attribute_store.get_user_attributes(session, user_id=user_id)
    assert current["user.department"] in {"sales", "engineering"}
