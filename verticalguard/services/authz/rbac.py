from __future__ import annotations

from dataclasses import dataclass
import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.core.config import get_settings
from verticalguard.core.errors import (
    BusinessVerticalNotResolvedError,
    RoleAssignmentForbiddenError,
    RoleNotFoundError,
    UnauthorizedError,
    UserNotFoundError,
)
from verticalguard.domain.models import BusinessVertical, Role, User, UserBusinessRole
from verticalguard.persistence.repos import rbac as rbac_repo
from verticalguard.services.authz.permissions import (
    can_assign_role,
    has_permission,
    max_assignable_level,
)


logger = logging.getLogger(__name__)

SITE_ACTIONS = ("read", "create", "update", "delete")


@dataclass(frozen=True)
class SubjectPermissions:
    user_id: str
    role_name: str | None
    permissions: list[str]
    is_super_admin: bool


@dataclass(frozen=True)
class BusinessContext:
    user_id: str
    business_vertical_id: str
    business_vertical_code: str
    permissions: list[str]
    is_business_admin: bool
    is_super_admin: bool


@dataclass(frozen=True)
class SiteGrant:
    site_id: str
    can_read: bool
    can_create: bool
    can_update: bool
    can_delete: bool


def is_super_admin(role_name: str | None, permissions: list[str]) -> bool:
    # One canonical rule: the reserved role name or the reserved wildcard permission.
    settings = get_settings()
    if role_name is not None and role_name == settings.super_admin_role_name:
        return True
    return settings.super_admin_permission in permissions


async def load_user(session: AsyncSession, *, subject_id: str) -> User:
    # Principals that do not resolve to an active stored user are not authenticated.
    try:
        UUID(str(subject_id))
    except ValueError as exc:
        raise UnauthorizedError("Invalid subject id") from exc
    user = await rbac_repo.get_user(session, user_id=str(subject_id))
    if user is None or not user.is_active:
        raise UnauthorizedError("Subject does not resolve to an active user")
    return user


async def _global_role(session: AsyncSession, user: User) -> Role | None:
    if user.role_id is None:
        return None
    role = await rbac_repo.get_role(session, role_id=user.role_id)
    if role is None or not role.is_active:
        return None
    return role


async def resolve_permissions(session: AsyncSession, *, subject_id: str) -> SubjectPermissions:
    user = await load_user(session, subject_id=subject_id)
    role = await _global_role(session, user)
    permissions: list[str] = []
    if role is not None:
        permissions = await rbac_repo.list_role_permission_names(session, role_id=role.id)
    role_name = role.name if role is not None else None
    if is_super_admin(role_name, permissions):
        return SubjectPermissions(
            user_id=user.id,
            role_name=role_name,
            permissions=[get_settings().super_admin_permission],
            is_super_admin=True,
        )
    return SubjectPermissions(
        user_id=user.id,
        role_name=role_name,
        permissions=permissions,
        is_super_admin=False,
    )


async def resolve_vertical(session: AsyncSession, *, identifier: str) -> BusinessVertical:
    vertical = await rbac_repo.resolve_vertical(session, identifier=identifier)
    if vertical is None:
        raise BusinessVerticalNotResolvedError(f"Business vertical '{identifier}' not found")
    return vertical


async def resolve_business_context(
    session: AsyncSession,
    *,
    subject_id: str,
    business_vertical: str,
) -> BusinessContext:
    """Compute the permissions a subject holds inside one business vertical.

    ``business_vertical`` may be an id, a code or a name. Super admins receive
    the wildcard permission and business-admin status without any lookup of
    their business roles.
    """
    subject = await resolve_permissions(session, subject_id=subject_id)
    vertical = await resolve_vertical(session, identifier=business_vertical)
    settings = get_settings()
    if subject.is_super_admin:
        return BusinessContext(
            user_id=subject.user_id,
            business_vertical_id=vertical.id,
            business_vertical_code=vertical.code,
            permissions=[settings.super_admin_permission],
            is_business_admin=True,
            is_super_admin=True,
        )
    permissions = await rbac_repo.list_business_permission_names(
        session, user_id=subject.user_id, business_vertical_id=vertical.id
    )
    return BusinessContext(
        user_id=subject.user_id,
        business_vertical_id=vertical.id,
        business_vertical_code=vertical.code,
        permissions=permissions,
        is_business_admin=settings.business_admin_permission in permissions,
        is_super_admin=False,
    )


async def has_permission_in_vertical(
    session: AsyncSession,
    *,
    subject_id: str,
    permission: str,
    business_vertical: str,
) -> bool:
    context = await resolve_business_context(
        session, subject_id=subject_id, business_vertical=business_vertical
    )
    return context.is_super_admin or has_permission(context.permissions, permission)


async def get_role_level(session: AsyncSession, *, user_id: str) -> int:
    # Lowest number across the global role and every active business role.
    user = await rbac_repo.get_user(session, user_id=user_id)
    if user is None:
        raise UserNotFoundError()
    levels: list[int] = []
    role = await _global_role(session, user)
    if role is not None:
        levels.append(role.level)
    business_roles = await rbac_repo.list_active_business_roles(session, user_id=user_id)
    levels.extend(business_role.level for business_role in business_roles)
    if not levels:
        return get_settings().default_role_level
    return min(levels)


async def can_user_assign_role(session: AsyncSession, *, user_id: str, target_level: int) -> bool:
    return can_assign_role(await get_role_level(session, user_id=user_id), target_level)


async def get_max_assignable_level(session: AsyncSession, *, user_id: str) -> int:
    return max_assignable_level(await get_role_level(session, user_id=user_id))


async def assign_business_role(
    session: AsyncSession,
    *,
    assigner_id: str,
    user_id: str,
    business_role_id: str,
) -> UserBusinessRole:
    business_role = await rbac_repo.get_business_role(session, business_role_id=business_role_id)
    if business_role is None:
        raise RoleNotFoundError("Business role not found")
    if await rbac_repo.get_user(session, user_id=user_id) is None:
        raise UserNotFoundError()
    assigner_level = await get_role_level(session, user_id=assigner_id)
    if not can_assign_role(assigner_level, business_role.level):
        logger.info(
            "role_assignment_forbidden assigner_id=%s assigner_level=%s target_level=%s",
            assigner_id,
            assigner_level,
            business_role.level,
        )
        raise RoleAssignmentForbiddenError(
            f"Level {assigner_level} cannot assign a role at level {business_role.level}"
        )
    row = await rbac_repo.assign_business_role(
        session,
        user_id=user_id,
        business_role_id=business_role_id,
        assigned_by=assigner_id,
    )
    await session.commit()
    return row


async def get_accessible_business_verticals(
    session: AsyncSession,
    *,
    subject_id: str,
) -> list[BusinessVertical]:
    subject = await resolve_permissions(session, subject_id=subject_id)
    verticals = await rbac_repo.list_active_verticals(session)
    if subject.is_super_admin:
        return verticals
    vertical_ids = set(await rbac_repo.list_user_vertical_ids(session, user_id=subject.user_id))
    return [vertical for vertical in verticals if vertical.id in vertical_ids]


async def has_business_access(
    session: AsyncSession,
    *,
    subject_id: str,
    business_vertical: str,
) -> bool:
    vertical = await resolve_vertical(session, identifier=business_vertical)
    accessible = await get_accessible_business_verticals(session, subject_id=subject_id)
    return any(item.id == vertical.id for item in accessible)


async def get_accessible_sites(
    session: AsyncSession,
    *,
    subject_id: str,
    business_vertical: str,
) -> list[SiteGrant]:
    user = await load_user(session, subject_id=subject_id)
    vertical = await resolve_vertical(session, identifier=business_vertical)
    rows = await rbac_repo.list_site_access(
        session, user_id=user.id, business_vertical_id=vertical.id
    )
    return [
        SiteGrant(
            site_id=row.site_id,
            can_read=row.can_read,
            can_create=row.can_create,
            can_update=row.can_update,
            can_delete=row.can_delete,
        )
        for row in rows
    ]


def can_perform_site_action(sites: list[SiteGrant], site_id: str, action: str) -> bool:
    # Flags are independent; an unknown site or action is a denial.
    for grant in sites:
        if grant.site_id != site_id:
            continue
        if action not in SITE_ACTIONS:
            return False
        return bool(getattr(grant, f"can_{action}"))
    return False
