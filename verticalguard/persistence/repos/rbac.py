from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.domain.models import (
    BusinessRole,
    BusinessRolePermission,
    BusinessVertical,
    Permission,
    Role,
    RolePermission,
    Site,
    User,
    UserBusinessRole,
    UserSiteAccess,
)


async def get_user(session: AsyncSession, *, user_id: str) -> User | None:
    return await session.get(User, user_id)


async def get_role(session: AsyncSession, *, role_id: str) -> Role | None:
    return await session.get(Role, role_id)


async def get_role_by_name(session: AsyncSession, *, name: str) -> Role | None:
    result = await session.execute(select(Role).where(Role.name == name))
    return result.scalar_one_or_none()


async def list_role_permission_names(session: AsyncSession, *, role_id: str) -> list[str]:
    result = await session.execute(
        select(Permission.name)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role_id)
        .order_by(Permission.name.asc())
    )
    return list(result.scalars().all())


async def list_active_business_roles(
    session: AsyncSession,
    *,
    user_id: str,
    business_vertical_id: str | None = None,
) -> list[BusinessRole]:
    # Only active memberships contribute; the vertical filter is optional for level lookups.
    stmt = (
        select(BusinessRole)
        .join(UserBusinessRole, UserBusinessRole.business_role_id == BusinessRole.id)
        .where(UserBusinessRole.user_id == user_id, UserBusinessRole.is_active.is_(True))
    )
    if business_vertical_id is not None:
        stmt = stmt.where(BusinessRole.business_vertical_id == business_vertical_id)
    result = await session.execute(stmt.order_by(BusinessRole.level.asc(), BusinessRole.name.asc()))
    return list(result.scalars().unique().all())


async def list_business_permission_names(
    session: AsyncSession,
    *,
    user_id: str,
    business_vertical_id: str,
) -> list[str]:
    result = await session.execute(
        select(Permission.name)
        .join(BusinessRolePermission, BusinessRolePermission.permission_id == Permission.id)
        .join(BusinessRole, BusinessRole.id == BusinessRolePermission.business_role_id)
        .join(UserBusinessRole, UserBusinessRole.business_role_id == BusinessRole.id)
        .where(
            UserBusinessRole.user_id == user_id,
            UserBusinessRole.is_active.is_(True),
            BusinessRole.business_vertical_id == business_vertical_id,
        )
        .distinct()
    )
    return sorted(result.scalars().all())


async def get_vertical(session: AsyncSession, *, vertical_id: str) -> BusinessVertical | None:
    return await session.get(BusinessVertical, vertical_id)


async def find_vertical_by_code(session: AsyncSession, *, code: str) -> BusinessVertical | None:
    result = await session.execute(
        select(BusinessVertical).where(func.lower(BusinessVertical.code) == code.lower())
    )
    return result.scalars().first()


async def find_vertical_by_name(session: AsyncSession, *, name: str) -> BusinessVertical | None:
    result = await session.execute(
        select(BusinessVertical).where(func.lower(BusinessVertical.name) == name.lower())
    )
    return result.scalars().first()


async def resolve_vertical(session: AsyncSession, *, identifier: str) -> BusinessVertical | None:
    # Lookup order is UUID, then code, then name; the first hit wins.
    candidate = identifier.strip()
    if not candidate:
        return None
    try:
        UUID(candidate)
    except ValueError:
        pass
    else:
        vertical = await get_vertical(session, vertical_id=candidate)
        if vertical is not None:
            return vertical
    vertical = await find_vertical_by_code(session, code=candidate)
    if vertical is not None:
        return vertical
    return await find_vertical_by_name(session, name=candidate)


async def list_active_verticals(session: AsyncSession) -> list[BusinessVertical]:
    result = await session.execute(
        select(BusinessVertical)
        .where(BusinessVertical.is_active.is_(True))
        .order_by(BusinessVertical.name.asc())
    )
    return list(result.scalars().all())


async def list_user_vertical_ids(session: AsyncSession, *, user_id: str) -> list[str]:
    result = await session.execute(
        select(BusinessRole.business_vertical_id)
        .join(UserBusinessRole, UserBusinessRole.business_role_id == BusinessRole.id)
        .where(UserBusinessRole.user_id == user_id, UserBusinessRole.is_active.is_(True))
        .distinct()
    )
    return sorted(result.scalars().all())


async def list_site_access(
    session: AsyncSession,
    *,
    user_id: str,
    business_vertical_id: str,
) -> list[UserSiteAccess]:
    result = await session.execute(
        select(UserSiteAccess)
        .join(Site, Site.id == UserSiteAccess.site_id)
        .where(UserSiteAccess.user_id == user_id, Site.business_vertical_id == business_vertical_id)
        .order_by(Site.name.asc())
    )
    return list(result.scalars().all())


async def assign_business_role(
    session: AsyncSession,
    *,
    user_id: str,
    business_role_id: str,
    assigned_by: str | None,
) -> UserBusinessRole:
    row = UserBusinessRole(
        user_id=user_id,
        business_role_id=business_role_id,
        assigned_by=assigned_by,
        is_active=True,
    )
    session.add(row)
    await session.flush()
    return row


async def get_business_role(session: AsyncSession, *, business_role_id: str) -> BusinessRole | None:
    return await session.get(BusinessRole, business_role_id)
