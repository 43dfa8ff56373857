from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.domain.models import Attribute, ResourceAttribute, UserAttribute


async def get_attribute(session: AsyncSession, *, attribute_id: str) -> Attribute | None:
    return await session.get(Attribute, attribute_id)


async def get_attribute_by_name(
    session: AsyncSession,
    *,
    name: str,
    active_only: bool = False,
) -> Attribute | None:
    stmt = select(Attribute).where(Attribute.name == name)
    if active_only:
        stmt = stmt.where(Attribute.is_active.is_(True))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_attributes(
    session: AsyncSession,
    *,
    attribute_type: str | None = None,
    is_active: bool | None = None,
) -> list[Attribute]:
    stmt = select(Attribute)
    if attribute_type is not None:
        stmt = stmt.where(Attribute.type == attribute_type)
    if is_active is not None:
        stmt = stmt.where(Attribute.is_active.is_(is_active))
    result = await session.execute(stmt.order_by(Attribute.name.asc()))
    return list(result.scalars().all())


async def deactivate_user_attribute(
    session: AsyncSession,
    *,
    user_id: str,
    attribute_id: str,
) -> int:
    # Flip the active row off instead of deleting it so history is preserved.
    result = await session.execute(
        update(UserAttribute)
        .where(
            UserAttribute.user_id == user_id,
            UserAttribute.attribute_id == attribute_id,
            UserAttribute.is_active.is_(True),
        )
        .values(is_active=False)
    )
    return int(result.rowcount or 0)


async def deactivate_resource_attribute(
    session: AsyncSession,
    *,
    resource_type: str,
    resource_id: str,
    attribute_id: str,
) -> int:
    result = await session.execute(
        update(ResourceAttribute)
        .where(
            ResourceAttribute.resource_type == resource_type,
            ResourceAttribute.resource_id == resource_id,
            ResourceAttribute.attribute_id == attribute_id,
            ResourceAttribute.is_active.is_(True),
        )
        .values(is_active=False)
    )
    return int(result.rowcount or 0)


async def list_current_user_attributes(
    session: AsyncSession,
    *,
    user_id: str,
    now: datetime,
) -> list[tuple[str, str]]:
    # Validity is filtered in SQL; expired rows may still carry is_active=True.
    result = await session.execute(
        select(Attribute.name, UserAttribute.value)
        .join(Attribute, Attribute.id == UserAttribute.attribute_id)
        .where(
            UserAttribute.user_id == user_id,
            UserAttribute.is_active.is_(True),
            UserAttribute.valid_from <= now,
            or_(UserAttribute.valid_until.is_(None), UserAttribute.valid_until > now),
        )
        .order_by(Attribute.name.asc())
    )
    return [(name, value) for name, value in result.all()]


async def list_current_resource_attributes(
    session: AsyncSession,
    *,
    resource_type: str,
    resource_id: str,
    now: datetime,
) -> list[tuple[str, str]]:
    result = await session.execute(
        select(Attribute.name, ResourceAttribute.value)
        .join(Attribute, Attribute.id == ResourceAttribute.attribute_id)
        .where(
            ResourceAttribute.resource_type == resource_type,
            ResourceAttribute.resource_id == resource_id,
            ResourceAttribute.is_active.is_(True),
            ResourceAttribute.valid_from <= now,
            or_(ResourceAttribute.valid_until.is_(None), ResourceAttribute.valid_until > now),
        )
        .order_by(Attribute.name.asc())
    )
    return [(name, value) for name, value in result.all()]


async def list_user_attribute_rows(
    session: AsyncSession,
    *,
    user_id: str,
    attribute_id: str,
) -> list[UserAttribute]:
    # Newest first for history views.
    result = await session.execute(
        select(UserAttribute)
        .where(UserAttribute.user_id == user_id, UserAttribute.attribute_id == attribute_id)
        .order_by(UserAttribute.created_at.desc(), UserAttribute.id.desc())
    )
    return list(result.scalars().all())


async def list_resource_attribute_rows(
    session: AsyncSession,
    *,
    resource_type: str,
    resource_id: str,
    attribute_id: str,
) -> list[ResourceAttribute]:
    result = await session.execute(
        select(ResourceAttribute)
        .where(
            ResourceAttribute.resource_type == resource_type,
            ResourceAttribute.resource_id == resource_id,
            ResourceAttribute.attribute_id == attribute_id,
        )
        .order_by(ResourceAttribute.created_at.desc(), ResourceAttribute.id.desc())
    )
    return list(result.scalars().all())
