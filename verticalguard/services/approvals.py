from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.core.config import get_settings
from verticalguard.core.errors import (
    AlreadyDecidedError,
    ApprovalRequestNotFoundError,
    AuthzError,
    ConflictError,
    DuplicateNameError,
    InvalidInputError,
    PolicyNotFoundError,
    RequestNotPendingError,
)
from verticalguard.domain.models import (
    APPROVAL_STATUS_APPROVED,
    APPROVAL_STATUS_PENDING,
    APPROVAL_STATUS_REJECTED,
    POLICY_STATUS_ACTIVE,
    POLICY_STATUS_INACTIVE,
    REQUEST_TYPES,
    PolicyApproval,
    PolicyApprovalRequest,
    PolicyApprovalWorkflow,
)
from verticalguard.persistence.repos import approvals as approvals_repo
from verticalguard.persistence.repos import policies as policies_repo
from verticalguard.persistence.repos import rbac as rbac_repo
from verticalguard.services.history import clamp_page, create_version, log_policy_change
from verticalguard.services.policies import UPDATABLE_FIELDS, apply_policy_changes, validate_conditions


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Approver:
    user_id: str
    roles: frozenset[str]


@dataclass(frozen=True)
class PendingCandidate:
    request: PolicyApprovalRequest
    workflow: PolicyApprovalWorkflow | None
    already_decided: bool


EligibilityPredicate = Callable[[PendingCandidate, Approver], bool]


def role_based_eligibility(candidate: PendingCandidate, approver: Approver) -> bool:
    # Eligible when undecided and holding one of the matching workflow's approver roles.
    if candidate.already_decided or candidate.workflow is None:
        return False
    return bool(approver.roles & set(candidate.workflow.approver_roles or []))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_workflow(
    session: AsyncSession,
    *,
    name: str,
    request_type: str,
    required_approvals: int = 1,
    approver_roles: list[str] | None = None,
    description: str | None = None,
    priority: int = 0,
    is_active: bool = True,
) -> PolicyApprovalWorkflow:
    if request_type not in REQUEST_TYPES:
        raise InvalidInputError(f"Unsupported request type: {request_type}")
    if required_approvals < 1:
        raise InvalidInputError("required_approvals must be at least 1")
    if await approvals_repo.get_workflow_by_name(session, name=name) is not None:
        raise DuplicateNameError(f"Workflow with name '{name}' already exists")
    workflow = PolicyApprovalWorkflow(
        name=name,
        description=description,
        request_type=request_type,
        required_approvals=required_approvals,
        approver_roles=list(approver_roles or []),
        is_active=is_active,
        priority=priority,
    )
    session.add(workflow)
    await session.commit()
    return workflow


async def list_workflows(session: AsyncSession) -> list[PolicyApprovalWorkflow]:
    return await approvals_repo.list_workflows(session)


async def create_request(
    session: AsyncSession,
    *,
    policy_id: str,
    request_type: str,
    requested_by: str,
    notes: str | None = None,
    proposed_changes: dict[str, Any] | None = None,
) -> PolicyApprovalRequest:
    if request_type not in REQUEST_TYPES:
        raise InvalidInputError(f"Unsupported request type: {request_type}")
    if await policies_repo.get_policy(session, policy_id=policy_id) is None:
        raise PolicyNotFoundError()
    if proposed_changes:
        # Reject bad proposals up front instead of failing at execution time.
        unknown = set(proposed_changes) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidInputError(f"Policy fields cannot be changed: {', '.join(sorted(unknown))}")
        if "conditions" in proposed_changes:
            validate_conditions(proposed_changes["conditions"])
    workflow = await approvals_repo.find_workflow(session, request_type=request_type)
    required = workflow.required_approvals if workflow is not None else get_settings().approval_default_required
    request = PolicyApprovalRequest(
        policy_id=policy_id,
        request_type=request_type,
        status=APPROVAL_STATUS_PENDING,
        requested_by=requested_by,
        request_notes=notes,
        required_approvals=max(1, int(required)),
        received_approvals=0,
        changes_proposed=proposed_changes,
    )
    session.add(request)
    await session.commit()
    logger.info(
        "approval_request_created request_id=%s policy_id=%s type=%s required=%s",
        request.id,
        policy_id,
        request_type,
        request.required_approvals,
    )
    return request


async def _load_pending(session: AsyncSession, *, request_id: str, approver_id: str) -> PolicyApprovalRequest:
    # Refusals happen here, before anything is staged, so they need no rollback.
    request = await approvals_repo.get_request(session, request_id=request_id, for_update=True)
    if request is None:
        raise ApprovalRequestNotFoundError()
    if request.status != APPROVAL_STATUS_PENDING:
        raise RequestNotPendingError(f"Request already resolved ({request.status})")
    if await approvals_repo.has_decided(session, request_id=request_id, approver_id=approver_id):
        raise AlreadyDecidedError()
    return request


async def _integrity_conflict(
    session: AsyncSession,
    exc: IntegrityError,
    *,
    request_id: str,
    approver_id: str,
) -> ConflictError:
    # Only a vote that landed first from the same approver counts as "already decided".
    await session.rollback()
    if await approvals_repo.has_decided(session, request_id=request_id, approver_id=approver_id):
        return AlreadyDecidedError()
    logger.warning("approval_write_conflict request_id=%s error=%s", request_id, exc.orig)
    return ConflictError("Policy changed concurrently while applying the decision; retry")


async def _execute_approved_action(
    session: AsyncSession,
    *,
    request: PolicyApprovalRequest,
    actor_id: str,
) -> None:
    # Runs inside the caller's transaction; any failure rolls the approval back too.
    policy = await policies_repo.get_policy(session, policy_id=request.policy_id)
    if policy is None:
        raise PolicyNotFoundError("Policy referenced by the request no longer exists")
    version = await create_version(
        session,
        policy=policy,
        created_by=actor_id,
        change_notes=f"Snapshot before approved {request.request_type}",
    )
    request.policy_version_id = version.id
    if request.request_type == "activate":
        diff = apply_policy_changes(policy, {"status": POLICY_STATUS_ACTIVE})
    elif request.request_type == "deactivate":
        diff = apply_policy_changes(policy, {"status": POLICY_STATUS_INACTIVE})
    elif request.request_type == "delete":
        diff = {"name": policy.name}
        await session.delete(policy)
    else:
        diff = apply_policy_changes(policy, dict(request.changes_proposed or {}))
    if request.request_type != "delete":
        policy.updated_by = actor_id
    await log_policy_change(
        session,
        policy_id=request.policy_id,
        action=request.request_type,
        changed_by=actor_id,
        changes=diff,
        reason=request.request_notes,
        version_id=version.id,
    )


async def approve(
    session: AsyncSession,
    *,
    request_id: str,
    approver_id: str,
    comments: str | None = None,
) -> PolicyApprovalRequest:
    """Record one approval; on reaching quorum resolve the request and apply it.

    The vote, the status change and the policy mutation are committed together,
    so an execution failure leaves the request pending with no vote recorded.
    """
    request = await _load_pending(session, request_id=request_id, approver_id=approver_id)
    try:
        session.add(
            PolicyApproval(
                request_id=request.id,
                approver_id=approver_id,
                status=APPROVAL_STATUS_APPROVED,
                comments=comments,
            )
        )
        request.received_approvals += 1
        if request.received_approvals >= request.required_approvals:
            request.status = APPROVAL_STATUS_APPROVED
            request.resolved_at = _utc_now()
            request.resolved_by = approver_id
            await _execute_approved_action(session, request=request, actor_id=approver_id)
        await session.commit()
    except IntegrityError as exc:
        raise await _integrity_conflict(
            session, exc, request_id=request_id, approver_id=approver_id
        ) from exc
    except AuthzError:
        await session.rollback()
        raise
    logger.info(
        "approval_recorded request_id=%s approver_id=%s received=%s required=%s status=%s",
        request.id,
        approver_id,
        request.received_approvals,
        request.required_approvals,
        request.status,
    )
    return request


async def reject(
    session: AsyncSession,
    *,
    request_id: str,
    approver_id: str,
    comments: str | None = None,
) -> PolicyApprovalRequest:
    # A single rejection vetoes the request.
    request = await _load_pending(session, request_id=request_id, approver_id=approver_id)
    try:
        session.add(
            PolicyApproval(
                request_id=request.id,
                approver_id=approver_id,
                status=APPROVAL_STATUS_REJECTED,
                comments=comments,
            )
        )
        request.status = APPROVAL_STATUS_REJECTED
        request.resolved_at = _utc_now()
        request.resolved_by = approver_id
        await session.commit()
    except IntegrityError as exc:
        raise await _integrity_conflict(
            session, exc, request_id=request_id, approver_id=approver_id
        ) from exc
    except AuthzError:
        await session.rollback()
        raise
    logger.info("approval_rejected request_id=%s approver_id=%s", request.id, approver_id)
    return request


async def get_approval_request(session: AsyncSession, *, request_id: str) -> PolicyApprovalRequest:
    request = await approvals_repo.get_request(session, request_id=request_id)
    if request is None:
        raise ApprovalRequestNotFoundError()
    return request


async def list_request_decisions(session: AsyncSession, *, request_id: str) -> list[PolicyApproval]:
    await get_approval_request(session, request_id=request_id)
    return await approvals_repo.list_approvals(session, request_id=request_id)


async def list_pending_requests(
    session: AsyncSession,
    *,
    limit: int | None = None,
    offset: int | None = None,
) -> tuple[list[PolicyApprovalRequest], int]:
    resolved_limit, resolved_offset = clamp_page(limit, offset)
    return await approvals_repo.list_pending_requests(
        session, limit=resolved_limit, offset=resolved_offset
    )


async def approver_roles_for(session: AsyncSession, *, user_id: str) -> frozenset[str]:
    # Global role name plus every active business role name.
    roles: set[str] = set()
    user = await rbac_repo.get_user(session, user_id=user_id)
    if user is not None and user.role_id is not None:
        role = await rbac_repo.get_role(session, role_id=user.role_id)
        if role is not None:
            roles.add(role.name)
    for business_role in await rbac_repo.list_active_business_roles(session, user_id=user_id):
        roles.add(business_role.name)
    return frozenset(roles)


async def list_user_pending_requests(
    session: AsyncSession,
    *,
    approver_id: str,
    roles: frozenset[str] | None = None,
    predicate: EligibilityPredicate | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> tuple[list[PolicyApprovalRequest], int]:
    # Eligibility is evaluated per request while paging through every pending request
    # in batches, then the eligible list is paginated in memory.
    resolved_limit, resolved_offset = clamp_page(limit, offset)
    check = predicate or role_based_eligibility
    approver = Approver(
        user_id=approver_id,
        roles=roles if roles is not None else await approver_roles_for(session, user_id=approver_id),
    )
    batch_size = max(1, get_settings().pending_scan_limit)
    workflows: dict[str, PolicyApprovalWorkflow | None] = {}
    eligible: list[PolicyApprovalRequest] = []
    scanned = 0
    while True:
        batch, pending_total = await approvals_repo.list_pending_requests(
            session, limit=batch_size, offset=scanned
        )
        decided = await approvals_repo.list_decided_request_ids(
            session, approver_id=approver_id, request_ids=[request.id for request in batch]
        )
        for request in batch:
            if request.request_type not in workflows:
                workflows[request.request_type] = await approvals_repo.find_workflow(
                    session, request_type=request.request_type
                )
            candidate = PendingCandidate(
                request=request,
                workflow=workflows[request.request_type],
                already_decided=request.id in decided,
            )
            if check(candidate, approver):
                eligible.append(request)
        scanned += len(batch)
        if not batch or scanned >= pending_total:
            break
    return eligible[resolved_offset : resolved_offset + resolved_limit], len(eligible)
