from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from verticalguard.core.config import get_settings
from verticalguard.core.errors import PolicyNotFoundError
from verticalguard.domain.models import Policy
from verticalguard.services.audit import EvaluationRecord
from verticalguard.services.authz import abac
from verticalguard.services.authz.abac import (
    CompiledPolicy,
    PolicyRequest,
    applies_to_action,
    applies_to_resource,
    build_context,
    compile_policy,
    evaluate_policy_set,
)
from verticalguard.services.authz.evaluator import Leaf
from verticalguard.services import attributes as attribute_store
from verticalguard.services import policies as policy_service
from verticalguard.tests.utils.seed import (
    create_active_policy,
    create_attribute,
    create_user,
    create_vertical,
)


def _leaf(attribute: str, operator: str, value: object) -> dict:
    return {"attribute": attribute, "operator": operator, "value": value}


def _policy(
    *,
    effect: str,
    priority: int = 0,
    conditions: dict | None = None,
    actions: list[str] | None = None,
    resources: list[str] | None = None,
) -> CompiledPolicy:
    # Build in-memory policies; nothing is persisted.
    return compile_policy(
        Policy(
            id=str(uuid4()),
            name=f"policy-{uuid4().hex}",
            display_name="policy",
            effect=effect,
            priority=priority,
            conditions=conditions or _leaf("user.department", "=", "engineering"),
            actions=actions or [],
            resources=resources or [],
            created_by="test",
        )
    )


class _CollectingSink:
    def __init__(self) -> None:
        self.records: list[EvaluationRecord] = []

    def submit(self, record: EvaluationRecord) -> None:
        self.records.append(record)


def _request(action: str = "project:update", **attributes: str) -> PolicyRequest:
    return PolicyRequest(
        user_id="u-1",
        action=action,
        resource_type="project",
        user_attributes={"user.department": "engineering", **attributes},
    )


def _decide(policies: list[CompiledPolicy], request: PolicyRequest, sink=None):
    return evaluate_policy_set(
        policies=policies,
        request=request,
        context=build_context(request),
        sink=sink,
    )


def test_deny_overrides_allow_regardless_of_priority() -> None:
    allow = _policy(effect="allow", priority=100)
    deny = _policy(effect="deny", priority=1)
    decision = _decide([allow, deny], _request())
    assert decision.allowed is False
    assert decision.effect == "deny"
    assert decision.reason == "Denied by 1 policy(ies)"
    assert decision.matched_policies == [allow.policy_id, deny.policy_id]
    assert decision.evaluated_policies == 2


def test_no_matching_policy_fails_closed() -> None:
    policy = _policy(effect="allow", conditions=_leaf("user.department", "=", "sales"))
    decision = _decide([policy], _request())
    assert decision.allowed is False
    assert decision.effect == "deny"
    assert decision.reason == "No matching policies found"
    assert decision.matched_policies == []


def test_only_allow_matches_allows() -> None:
    decision = _decide([_policy(effect="allow"), _policy(effect="allow")], _request())
    assert decision.allowed is True
    assert decision.reason == "Allowed by 2 policy(ies)"


def test_action_wildcard_prefix() -> None:
    assert applies_to_action(["project:*"], "project:update")
    assert not applies_to_action(["project:*"], "planning:update")
    assert applies_to_action([], "anything")
    assert applies_to_action(["*"], "anything")

    policy = _policy(effect="allow", actions=["project:*"])
    assert _decide([policy], _request("project:update")).allowed is True
    assert _decide([policy], _request("planning:update")).allowed is False


def test_resource_filter_skips_other_types() -> None:
    policy = _policy(effect="allow", resources=["material"])
    assert _decide([policy], _request()).allowed is False


def test_resource_wildcard_prefix() -> None:
    assert applies_to_resource(["project*"], "project_task")
    assert applies_to_resource(["project*"], "project")
    assert not applies_to_resource(["project*"], "planning")
    assert not applies_to_resource(["material"], "project")
    assert applies_to_resource([], "anything")
    assert applies_to_resource(["*"], "anything")


def test_broken_policy_is_skipped_without_aborting() -> None:
    broken_stored = _policy(effect="deny", conditions={"AND": []})
    assert broken_stored.condition is None
    broken_operator = CompiledPolicy(
        policy_id="p-bad-op",
        name="bad-op",
        effect="deny",
        priority=50,
        actions=(),
        resources=(),
        condition=Leaf(attribute="user.department", operator="SOUNDS_LIKE", value="x"),
    )
    allow = _policy(effect="allow")
    decision = _decide([broken_stored, broken_operator, allow], _request())
    assert decision.allowed is True
    assert decision.matched_policies == [allow.policy_id]


def test_matches_are_handed_to_the_sink() -> None:
    sink = _CollectingSink()
    allow = _policy(effect="allow")
    miss = _policy(effect="deny", conditions=_leaf("user.department", "=", "x"))
    _decide([allow, miss], _request(), sink)
    assert [record.policy_id for record in sink.records] == [allow.policy_id]
    assert sink.records[0].effect == "allow"
    assert sink.records[0].context["user.id"] == "u-1"


def test_derived_context_keys_win_over_caller_input() -> None:
    request = PolicyRequest(
        user_id="u-1",
        action="project:read",
        resource_type="project",
        resource_id="p-9",
        environment={"user.id": "spoofed", "environment.hour": "99", "environment.ip_address": "10.0.0.1"},
    )
    now = datetime(2026, 3, 4, 15, 30, tzinfo=timezone.utc)
    context = build_context(request, now=now)
    assert context["user.id"] == "u-1"
    assert context["resource.id"] == "p-9"
    assert context["environment.hour"] == "15"
    assert context["environment.day_of_week"] == "Wednesday"
    assert context["environment.date"] == "2026-03-04"
    assert context["environment.timestamp"] == "2026-03-04T15:30:00+00:00"
    assert context["environment.ip_address"] == "10.0.0.1"


@pytest.mark.asyncio
async def test_evaluate_uses_only_effective_policies(session) -> None:
    user = await create_user(session)
    await create_attribute(session, name="user.department")
    await attribute_store.assign_user_attribute(
        session, user_id=user.id, attribute_name="user.department", value="engineering"
    )
    condition = _leaf("user.department", "=", "engineering")
    allow = await create_active_policy(session, name="allow-eng", effect="allow", conditions=condition)
    await create_active_policy(
        session,
        name="expired-deny",
        effect="deny",
        conditions=condition,
        valid_until=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    await policy_service.create_policy(
        session, name="draft-deny", display_name="Draft", effect="deny", conditions=condition, created_by="t"
    )
    other = await create_vertical(session, name="Logistics", code="LOG")
    await create_active_policy(
        session, name="scoped-deny", effect="deny", conditions=condition, business_vertical_id=other.id
    )

    request = await abac.load_request(session, user_id=user.id, action="project:read", resource_type="project")
    decision = await abac.evaluate(session, request=request)
    assert decision.allowed is True
    assert decision.matched_policies == [allow.id]
    assert decision.evaluated_policies == 1

    scoped = await abac.evaluate(session, request=request, business_vertical_id=other.id)
    assert scoped.allowed is False
    assert scoped.evaluated_policies == 2


@pytest.mark.asyncio
async def test_evaluate_survives_malformed_stored_policy(session) -> None:
    user = await create_user(session)
    await create_active_policy(session, name="broken", effect="deny", priority=10, conditions={"OR": []})
    allow = await create_active_policy(
        session, name="allow-all", effect="allow", conditions=_leaf("user.id", "=", user.id)
    )
    request = await abac.load_request(session, user_id=user.id, action="report:read", resource_type="report")
    decision = await abac.evaluate(session, request=request)
    assert decision.allowed is True
    assert decision.matched_policies == [allow.id]


@pytest.mark.asyncio
async def test_disabled_abac_allows(session, monkeypatch) -> None:
    monkeypatch.setenv("AUTHZ_ABAC_ENABLED", "false")
    get_settings.cache_clear()
    request = PolicyRequest(user_id="u-1", action="project:read", resource_type="project")
    decision = await abac.evaluate(session, request=request)
    assert decision.allowed is True
    assert decision.reason == "ABAC evaluation disabled"


@pytest.mark.asyncio
async def test_dry_run_ignores_status_and_never_audits(session) -> None:
    policy = await policy_service.create_policy(
        session,
        name="draft-allow",
        display_name="Draft allow",
        effect="allow",
        conditions=_leaf("user.department", "=", "engineering"),
        created_by="t",
    )
    request = _request("project:read")
    decision = await abac.test_policy(session, policy_id=policy.id, request=request)
    assert decision.allowed is True
    assert decision.reason == "Policy 'Draft allow' matched"
    assert decision.matched_policies == [policy.id]

    sales = PolicyRequest(
        user_id="u-2",
        action="project:read",
        resource_type="project",
        user_attributes={"user.department": "sales"},
    )
    miss = await abac.test_policy(session, policy_id=policy.id, request=sales)
    assert miss.allowed is False
    assert miss.matched_policies == []

    with pytest.raises(PolicyNotFoundError):
        await abac.test_policy(session, policy_id=str(uuid4()), request=request)
