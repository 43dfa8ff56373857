from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.core.config import get_settings
from verticalguard.core.errors import DuplicateNameError, InvalidInputError, PolicyNotFoundError
from verticalguard.domain.models import (
    POLICY_EFFECTS,
    POLICY_STATUS_ACTIVE,
    POLICY_STATUS_DRAFT,
    POLICY_STATUS_INACTIVE,
    POLICY_STATUSES,
    Policy,
    PolicyEvaluation,
)
from verticalguard.persistence.repos import policies as policies_repo
from verticalguard.services.authz.evaluator import parse_condition
from verticalguard.services.history import clamp_page, log_policy_change


logger = logging.getLogger(__name__)

# Fields a partial update (or an approved change request) may touch.
UPDATABLE_FIELDS = {
    "display_name",
    "description",
    "effect",
    "priority",
    "status",
    "business_vertical_id",
    "conditions",
    "actions",
    "resources",
    "metadata",
    "valid_from",
    "valid_until",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_conditions(conditions: Any) -> None:
    settings = get_settings()
    parse_condition(
        conditions,
        max_depth=settings.authz_max_condition_depth,
        max_bytes=settings.authz_max_condition_bytes,
    )


def _validate_match_list(value: Any, field: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise InvalidInputError(f"{field} must be a list of strings")
    return list(value)


def _parse_datetime(value: Any, field: str) -> datetime | None:
    # Accept ISO strings from stored change requests as well as datetimes.
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidInputError(f"{field} must be an ISO-8601 timestamp") from exc
    raise InvalidInputError(f"{field} must be an ISO-8601 timestamp")


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _validated_value(field: str, raw: Any) -> Any:
    if field == "effect" and raw not in POLICY_EFFECTS:
        raise InvalidInputError(f"Unsupported policy effect: {raw}")
    if field == "status" and raw not in POLICY_STATUSES:
        raise InvalidInputError(f"Unsupported policy status: {raw}")
    if field == "priority" and (isinstance(raw, bool) or not isinstance(raw, int)):
        raise InvalidInputError("priority must be an integer")
    if field == "display_name" and not raw:
        raise InvalidInputError("display_name cannot be empty")
    if field == "conditions":
        validate_conditions(raw)
    elif field in {"actions", "resources"}:
        return _validate_match_list(raw, field)
    elif field in {"valid_from", "valid_until"}:
        value = _parse_datetime(raw, field)
        if field == "valid_from" and value is None:
            raise InvalidInputError("valid_from cannot be cleared")
        return value
    elif field == "metadata":
        return dict(raw or {})
    return raw


def apply_policy_changes(policy: Policy, changes: dict[str, Any]) -> dict[str, Any]:
    """Validate and apply a partial update in place, returning the field diff.

    The diff maps each changed field to ``{"from": old, "to": new}`` and is what
    gets written to the change log.
    """
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise InvalidInputError(f"Policy fields cannot be changed: {', '.join(sorted(unknown))}")
    # Validate every field before touching the policy so a rejected update leaves no partial state.
    validated = {field: _validated_value(field, raw) for field, raw in changes.items()}
    diff: dict[str, Any] = {}
    for field, value in validated.items():
        attribute = "metadata_json" if field == "metadata" else field
        previous = getattr(policy, attribute)
        if previous == value:
            continue
        setattr(policy, attribute, value)
        diff[field] = {"from": _jsonable(previous), "to": _jsonable(value)}
    return diff


async def create_policy(
    session: AsyncSession,
    *,
    name: str,
    display_name: str,
    effect: str,
    conditions: dict[str, Any],
    created_by: str,
    description: str | None = None,
    priority: int = 0,
    status: str | None = None,
    business_vertical_id: str | None = None,
    actions: list[str] | None = None,
    resources: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
) -> Policy:
    if not name:
        raise InvalidInputError("Policy name is required")
    if effect not in POLICY_EFFECTS:
        raise InvalidInputError(f"Unsupported policy effect: {effect}")
    resolved_status = status or POLICY_STATUS_DRAFT
    if resolved_status not in POLICY_STATUSES:
        raise InvalidInputError(f"Unsupported policy status: {resolved_status}")
    if await policies_repo.get_policy_by_name(session, name=name) is not None:
        raise DuplicateNameError(f"Policy with name '{name}' already exists")
    validate_conditions(conditions)
    policy = Policy(
        name=name,
        display_name=display_name or name,
        description=description,
        effect=effect,
        priority=priority,
        status=resolved_status,
        business_vertical_id=business_vertical_id,
        conditions=conditions,
        actions=_validate_match_list(actions, "actions"),
        resources=_validate_match_list(resources, "resources"),
        metadata_json=dict(metadata or {}),
        valid_from=valid_from or _utc_now(),
        valid_until=valid_until,
        created_by=created_by,
    )
    session.add(policy)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateNameError(f"Policy with name '{name}' already exists") from exc
    await log_policy_change(
        session,
        policy_id=policy.id,
        action="create",
        changed_by=created_by,
        changes={"name": name, "effect": effect, "status": resolved_status},
    )
    await session.commit()
    logger.info("policy_created policy_id=%s name=%s status=%s", policy.id, name, resolved_status)
    return policy


async def get_policy(session: AsyncSession, *, policy_id: str) -> Policy:
    policy = await policies_repo.get_policy(session, policy_id=policy_id)
    if policy is None:
        raise PolicyNotFoundError()
    return policy


async def update_policy(
    session: AsyncSession,
    *,
    policy_id: str,
    changes: dict[str, Any],
    updated_by: str,
    reason: str | None = None,
) -> Policy:
    policy = await get_policy(session, policy_id=policy_id)
    diff = apply_policy_changes(policy, changes)
    if diff:
        policy.updated_by = updated_by
        await log_policy_change(
            session,
            policy_id=policy.id,
            action="update",
            changed_by=updated_by,
            changes=diff,
            reason=reason,
        )
    await session.commit()
    return policy


async def delete_policy(
    session: AsyncSession,
    *,
    policy_id: str,
    deleted_by: str,
    reason: str | None = None,
) -> None:
    policy = await get_policy(session, policy_id=policy_id)
    await log_policy_change(
        session,
        policy_id=policy.id,
        action="delete",
        changed_by=deleted_by,
        changes={"name": policy.name},
        reason=reason,
    )
    await session.delete(policy)
    await session.commit()


async def _set_status(session: AsyncSession, *, policy_id: str, status: str, updated_by: str) -> Policy:
    policy = await get_policy(session, policy_id=policy_id)
    previous = policy.status
    policy.status = status
    policy.updated_by = updated_by
    await log_policy_change(
        session,
        policy_id=policy.id,
        action="activate" if status == POLICY_STATUS_ACTIVE else "deactivate",
        changed_by=updated_by,
        changes={"status": {"from": previous, "to": status}},
    )
    await session.commit()
    return policy


async def activate_policy(session: AsyncSession, *, policy_id: str, updated_by: str) -> Policy:
    return await _set_status(
        session, policy_id=policy_id, status=POLICY_STATUS_ACTIVE, updated_by=updated_by
    )


async def deactivate_policy(session: AsyncSession, *, policy_id: str, updated_by: str) -> Policy:
    return await _set_status(
        session, policy_id=policy_id, status=POLICY_STATUS_INACTIVE, updated_by=updated_by
    )


async def clone_policy(
    session: AsyncSession,
    *,
    policy_id: str,
    new_name: str,
    created_by: str,
) -> Policy:
    # Clones start as drafts so they never take effect without review.
    original = await get_policy(session, policy_id=policy_id)
    return await create_policy(
        session,
        name=new_name,
        display_name=f"{original.display_name} (Copy)",
        description=original.description,
        effect=original.effect,
        priority=original.priority,
        status=POLICY_STATUS_DRAFT,
        business_vertical_id=original.business_vertical_id,
        conditions=original.conditions,
        actions=list(original.actions or []),
        resources=list(original.resources or []),
        metadata=dict(original.metadata_json or {}),
        created_by=created_by,
    )


async def list_policies(
    session: AsyncSession,
    *,
    status: str | None = None,
    business_vertical_id: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> tuple[list[Policy], int]:
    if status is not None and status not in POLICY_STATUSES:
        raise InvalidInputError(f"Unsupported policy status: {status}")
    resolved_limit, resolved_offset = clamp_page(limit, offset)
    return await policies_repo.list_policies(
        session,
        status=status,
        business_vertical_id=business_vertical_id,
        limit=resolved_limit,
        offset=resolved_offset,
    )


async def get_policy_statistics(session: AsyncSession) -> dict[str, Any]:
    since = _utc_now() - timedelta(hours=24)
    return {
        "by_status": await policies_repo.count_policies_by(session, column="status"),
        "by_effect": await policies_repo.count_policies_by(session, column="effect"),
        "total_evaluations": await policies_repo.count_evaluations(session),
        "recent_evaluations": await policies_repo.count_evaluations(session, since=since),
    }


async def list_policy_evaluations(
    session: AsyncSession,
    *,
    policy_id: str | None = None,
    user_id: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> tuple[list[PolicyEvaluation], int]:
    if policy_id is None and user_id is None:
        raise InvalidInputError("Filter by policy_id or user_id")
    resolved_limit, resolved_offset = clamp_page(limit, offset)
    return await policies_repo.list_evaluations(
        session,
        policy_id=policy_id,
        user_id=user_id,
        limit=resolved_limit,
        offset=resolved_offset,
    )
