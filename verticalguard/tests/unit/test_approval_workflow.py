from __future__ import annotations

from uuid import uuid4

import pytest

from verticalguard.core.config import get_settings
from verticalguard.core.errors import (
    AlreadyDecidedError,
    ConflictError,
    InvalidConditionError,
    InvalidInputError,
    PolicyNotFoundError,
    RequestNotPendingError,
)
from verticalguard.persistence.repos import approvals as approvals_repo
from verticalguard.services import approvals as approval_service
from verticalguard.services import history
from verticalguard.services import policies as policy_service
from verticalguard.services.approvals import Approver, PendingCandidate
from verticalguard.tests.utils.seed import create_role, create_user


CONDITION = {"attribute": "user.department", "operator": "=", "value": "engineering"}


def _approver() -> str:
    return str(uuid4())


async def _draft_policy(session, name: str = "eng-access"):
    return await policy_service.create_policy(
        session,
        name=name,
        display_name="Engineering access",
        effect="allow",
        conditions=CONDITION,
        created_by="author",
    )


@pytest.mark.asyncio
async def test_quorum_of_two_resolves_on_second_distinct_approval(session) -> None:
    policy = await _draft_policy(session)
    await approval_service.create_workflow(
        session, name="two-person-activate", request_type="activate", required_approvals=2
    )
    request = await approval_service.create_request(
        session, policy_id=policy.id, request_type="activate", requested_by="author"
    )
    assert request.required_approvals == 2
    assert request.received_approvals == 0

    first = _approver()
    after_first = await approval_service.approve(session, request_id=request.id, approver_id=first)
    assert after_first.status == "pending"
    assert after_first.received_approvals == 1
    assert (await policy_service.get_policy(session, policy_id=policy.id)).status == "draft"

    second = _approver()
    resolved = await approval_service.approve(session, request_id=request.id, approver_id=second)
    assert resolved.status == "approved"
    assert resolved.received_approvals == 2
    assert resolved.resolved_by == second
    assert resolved.resolved_at is not None
    assert (await policy_service.get_policy(session, policy_id=policy.id)).status == "active"

    versions = await history.get_policy_versions(session, policy_id=policy.id)
    assert [version.version for version in versions] == [1]
    assert versions[0].status == "draft"
    assert resolved.policy_version_id == versions[0].id
    logs, total = await history.get_policy_change_logs(session, policy_id=policy.id)
    assert total == 2
    assert logs[0].action == "activate"
    assert logs[0].version_id == versions[0].id


@pytest.mark.asyncio
async def test_single_rejection_vetoes_and_blocks_further_votes(session) -> None:
    policy = await _draft_policy(session)
    await approval_service.create_workflow(
        session, name="three-person-activate", request_type="activate", required_approvals=3
    )
    request = await approval_service.create_request(
        session, policy_id=policy.id, request_type="activate", requested_by="author"
    )
    await approval_service.approve(session, request_id=request.id, approver_id=_approver())
    rejected = await approval_service.reject(
        session, request_id=request.id, approver_id=_approver(), comments="not yet"
    )
    assert rejected.status == "rejected"
    with pytest.raises(RequestNotPendingError):
        await approval_service.approve(session, request_id=request.id, approver_id=_approver())
    with pytest.raises(RequestNotPendingError):
        await approval_service.reject(session, request_id=request.id, approver_id=_approver())
    # A refused vote stages nothing, so objects already loaded stay readable.
    assert rejected.status == "rejected"
    assert policy.status == "draft"
    assert (await policy_service.get_policy(session, policy_id=policy.id)).status == "draft"


@pytest.mark.asyncio
async def test_approver_decides_only_once(session) -> None:
    policy = await _draft_policy(session)
    await approval_service.create_workflow(
        session, name="two-person-activate", request_type="activate", required_approvals=2
    )
    request = await approval_service.create_request(
        session, policy_id=policy.id, request_type="activate", requested_by="author"
    )
    approver = _approver()
    await approval_service.approve(session, request_id=request.id, approver_id=approver)
    with pytest.raises(AlreadyDecidedError):
        await approval_service.approve(session, request_id=request.id, approver_id=approver)
    with pytest.raises(AlreadyDecidedError):
        await approval_service.reject(session, request_id=request.id, approver_id=approver)
    assert request.received_approvals == 1

    current = await approval_service.get_approval_request(session, request_id=request.id)
    assert current.status == "pending"
    assert current.received_approvals == 1
    decisions = await approval_service.list_request_decisions(session, request_id=request.id)
    assert [decision.approver_id for decision in decisions] == [approver]


@pytest.mark.asyncio
async def test_default_quorum_applies_update_and_delete(session) -> None:
    policy = await _draft_policy(session)
    update = await approval_service.create_request(
        session,
        policy_id=policy.id,
        request_type="update",
        requested_by="author",
        proposed_changes={"priority": 40, "description": "reviewed"},
    )
    assert update.required_approvals == 1
    await approval_service.approve(session, request_id=update.id, approver_id=_approver())
    updated = await policy_service.get_policy(session, policy_id=policy.id)
    assert updated.priority == 40
    assert updated.description == "reviewed"

    delete = await approval_service.create_request(
        session, policy_id=policy.id, request_type="delete", requested_by="author"
    )
    await approval_service.approve(session, request_id=delete.id, approver_id=_approver())
    with pytest.raises(PolicyNotFoundError):
        await policy_service.get_policy(session, policy_id=policy.id)
    versions = await history.get_policy_versions(session, policy_id=policy.id)
    assert [version.version for version in versions] == [2, 1]
    assert versions[0].priority == 40


@pytest.mark.asyncio
async def test_proposals_are_validated_when_requested(session) -> None:
    policy = await _draft_policy(session)
    with pytest.raises(InvalidInputError):
        await approval_service.create_request(
            session,
            policy_id=policy.id,
            request_type="update",
            requested_by="author",
            proposed_changes={"name": "renamed"},
        )
    with pytest.raises(InvalidConditionError):
        await approval_service.create_request(
            session,
            policy_id=policy.id,
            request_type="update",
            requested_by="author",
            proposed_changes={"conditions": {"AND": []}},
        )
    with pytest.raises(InvalidInputError):
        await approval_service.create_request(
            session, policy_id=policy.id, request_type="archive", requested_by="author"
        )
    with pytest.raises(PolicyNotFoundError):
        await approval_service.create_request(
            session, policy_id=str(uuid4()), request_type="activate", requested_by="author"
        )


@pytest.mark.asyncio
async def test_failed_execution_leaves_request_pending_without_the_vote(session) -> None:
    policy = await _draft_policy(session)
    request = await approval_service.create_request(
        session, policy_id=policy.id, request_type="activate", requested_by="author"
    )
    request_id = request.id
    await policy_service.delete_policy(session, policy_id=policy.id, deleted_by="author")
    with pytest.raises(PolicyNotFoundError):
        await approval_service.approve(session, request_id=request_id, approver_id=_approver())

    current = await approval_service.get_approval_request(session, request_id=request_id)
    assert current.status == "pending"
    assert current.received_approvals == 0
    assert await approval_service.list_request_decisions(session, request_id=request_id) == []


@pytest.mark.asyncio
async def test_pending_requests_filtered_by_eligibility(session) -> None:
    policy = await _draft_policy(session)
    other = await _draft_policy(session, name="ops-access")
    await approval_service.create_workflow(
        session,
        name="admin-activate",
        request_type="activate",
        required_approvals=2,
        approver_roles=["policy_admin"],
    )
    activate = await approval_service.create_request(
        session, policy_id=policy.id, request_type="activate", requested_by="author"
    )
    unmatched = await approval_service.create_request(
        session, policy_id=other.id, request_type="deactivate", requested_by="author"
    )

    admin_role = await create_role(session, name="policy_admin", level=1)
    admin = await create_user(session, name="Admin", role=admin_role)
    outsider = await create_user(session, name="Outsider")

    items, total = await approval_service.list_user_pending_requests(session, approver_id=admin.id)
    assert [item.id for item in items] == [activate.id]
    assert total == 1
    items, total = await approval_service.list_user_pending_requests(session, approver_id=outsider.id)
    assert (items, total) == ([], 0)

    await approval_service.approve(session, request_id=activate.id, approver_id=admin.id)
    items, _ = await approval_service.list_user_pending_requests(session, approver_id=admin.id)
    assert items == []

    def everyone(candidate: PendingCandidate, approver: Approver) -> bool:
        return not candidate.already_decided

    items, total = await approval_service.list_user_pending_requests(
        session, approver_id=outsider.id, predicate=everyone
    )
    assert {item.id for item in items} == {activate.id, unmatched.id}
    assert total == 2

    all_pending, all_total = await approval_service.list_pending_requests(session, limit=1)
    assert len(all_pending) == 1
    assert all_total == 2


@pytest.mark.asyncio
async def test_version_numbers_are_sequential_per_policy(session) -> None:
    policy = await _draft_policy(session)
    other = await _draft_policy(session, name="ops-access")
    first = await history.snapshot_policy(session, policy_id=policy.id, created_by="author")
    second = await history.snapshot_policy(session, policy_id=policy.id, created_by="author")
    unrelated = await history.snapshot_policy(session, policy_id=other.id, created_by="author")
    assert (first.version, second.version, unrelated.version) == (1, 2, 1)
    with pytest.raises(PolicyNotFoundError):
        await history.snapshot_policy(session, policy_id=str(uuid4()), created_by="author")


@pytest.mark.asyncio
async def test_duplicate_vote_caught_by_constraint_is_already_decided(session, monkeypatch) -> None:
    policy = await _draft_policy(session)
    await approval_service.create_workflow(
        session, name="two-person-activate", request_type="activate", required_approvals=2
    )
    request = await approval_service.create_request(
        session, policy_id=policy.id, request_type="activate", requested_by="author"
    )
    request_id = request.id
    approver = _approver()
    await approval_service.approve(session, request_id=request_id, approver_id=approver)

    # The pre-check misses a vote that a concurrent call committed first.
    real_has_decided = approvals_repo.has_decided
    checks: list[str] = []

    async def first_check_misses(session, *, request_id: str, approver_id: str) -> bool:
        checks.append(approver_id)
        if len(checks) == 1:
            return False
        return await real_has_decided(session, request_id=request_id, approver_id=approver_id)

    monkeypatch.setattr(approvals_repo, "has_decided", first_check_misses)
    with pytest.raises(AlreadyDecidedError):
        await approval_service.approve(session, request_id=request_id, approver_id=approver)

    current = await approval_service.get_approval_request(session, request_id=request_id)
    assert current.received_approvals == 1


@pytest.mark.asyncio
async def test_version_collision_during_execution_is_a_generic_conflict(session, monkeypatch) -> None:
    policy = await _draft_policy(session)
    policy_id = policy.id
    await history.snapshot_policy(session, policy_id=policy_id, created_by="author")
    request = await approval_service.create_request(
        session, policy_id=policy_id, request_type="activate", requested_by="author"
    )
    request_id = request.id

    # A stale max lets the execution snapshot reuse version 1, as a concurrent snapshot would.
    async def stale_max_version(session, *, policy_id: str) -> int:
        return 0

    monkeypatch.setattr(approvals_repo, "max_version", stale_max_version)
    with pytest.raises(ConflictError) as excinfo:
        await approval_service.approve(session, request_id=request_id, approver_id=_approver())
    assert not isinstance(excinfo.value, AlreadyDecidedError)

    current = await approval_service.get_approval_request(session, request_id=request_id)
    assert current.status == "pending"
    assert current.received_approvals == 0
    assert (await policy_service.get_policy(session, policy_id=policy_id)).status == "draft"


@pytest.mark.asyncio
async def test_eligible_requests_beyond_one_scan_batch_are_listed(session, monkeypatch) -> None:
    monkeypatch.setenv("PENDING_SCAN_LIMIT", "2")
    get_settings.cache_clear()
    await approval_service.create_workflow(
        session, name="admin-activate", request_type="activate", approver_roles=["policy_admin"]
    )
    created = []
    for index in range(5):
        policy = await _draft_policy(session, name=f"policy-{index}")
        request = await approval_service.create_request(
            session, policy_id=policy.id, request_type="activate", requested_by="author"
        )
        created.append(request.id)

    items, total = await approval_service.list_user_pending_requests(
        session, approver_id=_approver(), roles=frozenset({"policy_admin"}), limit=3
    )
    assert total == 5
    assert len(items) == 3
    everything, _ = await approval_service.list_user_pending_requests(
        session, approver_id=_approver(), roles=frozenset({"policy_admin"})
    )
    assert {item.id for item in everything} == set(created)
