from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.domain.models import POLICY_STATUS_ACTIVE, Policy, PolicyEvaluation


async def get_policy(session: AsyncSession, *, policy_id: str) -> Policy | None:
    return await session.get(Policy, policy_id)


async def get_policy_by_name(session: AsyncSession, *, name: str) -> Policy | None:
    result = await session.execute(select(Policy).where(Policy.name == name))
    return result.scalar_one_or_none()


async def list_effective_policies(
    session: AsyncSession,
    *,
    now: datetime,
    business_vertical_id: str | None = None,
) -> list[Policy]:
    # Active and inside the validity window; ties on priority fall back to creation order.
    scope = Policy.business_vertical_id.is_(None)
    if business_vertical_id is not None:
        scope = or_(scope, Policy.business_vertical_id == business_vertical_id)
    result = await session.execute(
        select(Policy)
        .where(
            Policy.status == POLICY_STATUS_ACTIVE,
            Policy.valid_from <= now,
            or_(Policy.valid_until.is_(None), Policy.valid_until > now),
            scope,
        )
        .order_by(Policy.priority.desc(), Policy.created_at.asc(), Policy.id.asc())
    )
    return list(result.scalars().all())


async def list_policies(
    session: AsyncSession,
    *,
    status: str | None = None,
    business_vertical_id: str | None = None,
    limit: int,
    offset: int,
) -> tuple[list[Policy], int]:
    filters: list[Any] = []
    if status is not None:
        filters.append(Policy.status == status)
    if business_vertical_id is not None:
        filters.append(Policy.business_vertical_id == business_vertical_id)
    total = await session.scalar(select(func.count()).select_from(Policy).where(*filters))
    result = await session.execute(
        select(Policy)
        .where(*filters)
        .order_by(Policy.priority.desc(), Policy.created_at.desc(), Policy.id.asc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)


async def count_policies_by(session: AsyncSession, *, column: str) -> dict[str, int]:
    field = getattr(Policy, column)
    result = await session.execute(select(field, func.count()).group_by(field))
    return {str(key): int(count) for key, count in result.all()}


async def add_evaluations(session: AsyncSession, *, rows: list[PolicyEvaluation]) -> None:
    session.add_all(rows)
    await session.flush()


async def count_evaluations(session: AsyncSession, *, since: datetime | None = None) -> int:
    stmt = select(func.count()).select_from(PolicyEvaluation)
    if since is not None:
        stmt = stmt.where(PolicyEvaluation.evaluated_at >= since)
    return int(await session.scalar(stmt) or 0)


async def list_evaluations(
    session: AsyncSession,
    *,
    policy_id: str | None = None,
    user_id: str | None = None,
    limit: int,
    offset: int,
) -> tuple[list[PolicyEvaluation], int]:
    filters: list[Any] = []
    if policy_id is not None:
        filters.append(PolicyEvaluation.policy_id == policy_id)
    if user_id is not None:
        filters.append(PolicyEvaluation.user_id == user_id)
    total = await session.scalar(select(func.count()).select_from(PolicyEvaluation).where(*filters))
    result = await session.execute(
        select(PolicyEvaluation)
        .where(*filters)
        .order_by(PolicyEvaluation.evaluated_at.desc(), PolicyEvaluation.id.asc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)
