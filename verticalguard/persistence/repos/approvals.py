from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.domain.models import (
    APPROVAL_STATUS_PENDING,
    PolicyApproval,
    PolicyApprovalRequest,
    PolicyApprovalWorkflow,
    PolicyChangeLog,
    PolicyVersion,
)


async def find_workflow(session: AsyncSession, *, request_type: str) -> PolicyApprovalWorkflow | None:
    # Highest priority active workflow wins when several match a request type.
    result = await session.execute(
        select(PolicyApprovalWorkflow)
        .where(
            PolicyApprovalWorkflow.request_type == request_type,
            PolicyApprovalWorkflow.is_active.is_(True),
        )
        .order_by(PolicyApprovalWorkflow.priority.desc(), PolicyApprovalWorkflow.created_at.asc())
        .limit(1)
    )
    return result.scalars().first()


async def list_workflows(session: AsyncSession) -> list[PolicyApprovalWorkflow]:
    result = await session.execute(
        select(PolicyApprovalWorkflow).order_by(
            PolicyApprovalWorkflow.priority.desc(), PolicyApprovalWorkflow.name.asc()
        )
    )
    return list(result.scalars().all())


async def get_workflow_by_name(session: AsyncSession, *, name: str) -> PolicyApprovalWorkflow | None:
    result = await session.execute(
        select(PolicyApprovalWorkflow).where(PolicyApprovalWorkflow.name == name)
    )
    return result.scalar_one_or_none()


async def get_request(
    session: AsyncSession,
    *,
    request_id: str,
    for_update: bool = False,
) -> PolicyApprovalRequest | None:
    stmt = select(PolicyApprovalRequest).where(PolicyApprovalRequest.id == request_id)
    if for_update:
        # Serialize concurrent votes on one request; sqlite ignores the hint.
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_pending_requests(
    session: AsyncSession,
    *,
    limit: int,
    offset: int,
) -> tuple[list[PolicyApprovalRequest], int]:
    predicate = PolicyApprovalRequest.status == APPROVAL_STATUS_PENDING
    total = await session.scalar(select(func.count()).select_from(PolicyApprovalRequest).where(predicate))
    result = await session.execute(
        select(PolicyApprovalRequest)
        .where(predicate)
        .order_by(PolicyApprovalRequest.created_at.desc(), PolicyApprovalRequest.id.asc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)


async def list_approvals(session: AsyncSession, *, request_id: str) -> list[PolicyApproval]:
    result = await session.execute(
        select(PolicyApproval)
        .where(PolicyApproval.request_id == request_id)
        .order_by(PolicyApproval.created_at.asc(), PolicyApproval.id.asc())
    )
    return list(result.scalars().all())


async def list_decided_request_ids(
    session: AsyncSession,
    *,
    approver_id: str,
    request_ids: list[str],
) -> set[str]:
    if not request_ids:
        return set()
    result = await session.execute(
        select(PolicyApproval.request_id).where(
            PolicyApproval.approver_id == approver_id,
            PolicyApproval.request_id.in_(request_ids),
        )
    )
    return set(result.scalars().all())


async def has_decided(session: AsyncSession, *, request_id: str, approver_id: str) -> bool:
    result = await session.execute(
        select(PolicyApproval.id).where(
            PolicyApproval.request_id == request_id,
            PolicyApproval.approver_id == approver_id,
        )
    )
    return result.first() is not None


async def max_version(session: AsyncSession, *, policy_id: str) -> int:
    value = await session.scalar(
        select(func.max(PolicyVersion.version)).where(PolicyVersion.policy_id == policy_id)
    )
    return int(value or 0)


async def list_versions(session: AsyncSession, *, policy_id: str) -> list[PolicyVersion]:
    result = await session.execute(
        select(PolicyVersion)
        .where(PolicyVersion.policy_id == policy_id)
        .order_by(PolicyVersion.version.desc())
    )
    return list(result.scalars().all())


async def list_change_logs(
    session: AsyncSession,
    *,
    policy_id: str,
    limit: int,
    offset: int,
) -> tuple[list[PolicyChangeLog], int]:
    filters: list[Any] = [PolicyChangeLog.policy_id == policy_id]
    total = await session.scalar(select(func.count()).select_from(PolicyChangeLog).where(*filters))
    result = await session.execute(
        select(PolicyChangeLog)
        .where(*filters)
        .order_by(PolicyChangeLog.created_at.desc(), PolicyChangeLog.id.asc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)
