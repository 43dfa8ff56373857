from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.core.config import get_settings
from verticalguard.core.errors import PolicyNotFoundError
from verticalguard.domain.models import Policy, PolicyChangeLog, PolicyVersion
from verticalguard.persistence.repos import approvals as approvals_repo
from verticalguard.persistence.repos import policies as policies_repo


def clamp_page(limit: int | None, offset: int | None) -> tuple[int, int]:
    # Keep pagination inside configured bounds.
    settings = get_settings()
    resolved_limit = settings.default_page_size if limit is None else int(limit)
    resolved_limit = max(1, min(resolved_limit, settings.max_page_size))
    return resolved_limit, max(0, int(offset or 0))


async def create_version(
    session: AsyncSession,
    *,
    policy: Policy,
    created_by: str,
    change_notes: str | None = None,
) -> PolicyVersion:
    # Numbering is 1 + current max, so versions stay gapless per policy.
    # The (policy_id, version) unique constraint rejects a concurrent duplicate.
    version = PolicyVersion(
        policy_id=policy.id,
        version=await approvals_repo.max_version(session, policy_id=policy.id) + 1,
        name=policy.name,
        display_name=policy.display_name,
        description=policy.description,
        effect=policy.effect,
        priority=policy.priority,
        status=policy.status,
        conditions=policy.conditions,
        actions=list(policy.actions or []),
        resources=list(policy.resources or []),
        metadata_json=dict(policy.metadata_json or {}),
        created_by=created_by,
        change_notes=change_notes,
    )
    session.add(version)
    await session.flush()
    return version


async def log_policy_change(
    session: AsyncSession,
    *,
    policy_id: str,
    action: str,
    changed_by: str,
    changes: dict[str, Any] | None = None,
    reason: str | None = None,
    version_id: str | None = None,
) -> PolicyChangeLog:
    entry = PolicyChangeLog(
        policy_id=policy_id,
        version_id=version_id,
        action=action,
        changed_by=changed_by,
        changes_json=changes or {},
        reason=reason,
    )
    session.add(entry)
    await session.flush()
    return entry


async def get_policy_versions(session: AsyncSession, *, policy_id: str) -> list[PolicyVersion]:
    return await approvals_repo.list_versions(session, policy_id=policy_id)


async def snapshot_policy(
    session: AsyncSession,
    *,
    policy_id: str,
    created_by: str,
    change_notes: str | None = None,
) -> PolicyVersion:
    policy = await policies_repo.get_policy(session, policy_id=policy_id)
    if policy is None:
        raise PolicyNotFoundError()
    version = await create_version(
        session, policy=policy, created_by=created_by, change_notes=change_notes
    )
    await session.commit()
    return version


async def get_policy_change_logs(
    session: AsyncSession,
    *,
    policy_id: str,
    limit: int | None = None,
    offset: int | None = None,
) -> tuple[list[PolicyChangeLog], int]:
    resolved_limit, resolved_offset = clamp_page(limit, offset)
    return await approvals_repo.list_change_logs(
        session, policy_id=policy_id, limit=resolved_limit, offset=resolved_offset
    )
