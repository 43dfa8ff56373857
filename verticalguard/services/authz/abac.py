from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any, Iterable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.core.config import get_settings
from verticalguard.core.errors import (
    ConditionEvaluationError,
    ConditionTooComplexError,
    InvalidConditionError,
    PolicyNotFoundError,
)
from verticalguard.domain.models import POLICY_EFFECT_ALLOW, POLICY_EFFECT_DENY, Policy
from verticalguard.persistence.repos import policies as policies_repo
from verticalguard.services import attributes as attribute_store
from verticalguard.services.audit import EvaluationRecord
from verticalguard.services.authz.evaluator import (
    ConditionNode,
    Context,
    evaluate_condition,
    parse_condition,
    stringify,
)


logger = logging.getLogger(__name__)

_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


class EvaluationSink(Protocol):
    def submit(self, record: EvaluationRecord) -> None: ...


@dataclass(frozen=True)
class PolicyRequest:
    user_id: str
    action: str
    resource_type: str
    resource_id: str | None = None
    user_attributes: dict[str, str] = field(default_factory=dict)
    resource_attributes: dict[str, str] = field(default_factory=dict)
    environment: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyDecision:
    # Full decision for administrators; end users only see allowed/effect/reason.
    allowed: bool
    effect: str
    reason: str
    matched_policies: list[str]
    context: dict[str, str]
    evaluated_policies: int


@dataclass(frozen=True)
class CompiledPolicy:
    policy_id: str
    name: str
    effect: str
    priority: int
    actions: tuple[str, ...]
    resources: tuple[str, ...]
    condition: ConditionNode | None
    error: str | None = None


def _utc_now() -> datetime:
    # Keep ABAC evaluation timestamps in UTC.
    return datetime.now(timezone.utc)


def compile_policy(policy: Policy) -> CompiledPolicy:
    # Parse the stored tree once per load; a broken tree is kept as an error marker.
    condition: ConditionNode | None = None
    error: str | None = None
    try:
        condition = parse_condition(policy.conditions)
    except (InvalidConditionError, ConditionTooComplexError) as exc:
        error = exc.message
    return CompiledPolicy(
        policy_id=policy.id,
        name=policy.name,
        effect=policy.effect,
        priority=policy.priority,
        actions=tuple(str(item) for item in (policy.actions or [])),
        resources=tuple(str(item) for item in (policy.resources or [])),
        condition=condition,
        error=error,
    )


def build_context(request: PolicyRequest, *, now: datetime | None = None) -> Context:
    # Later layers win: synthesized keys are written last so callers cannot spoof them.
    now = now or _utc_now()
    context: Context = {}
    context.update(request.user_attributes)
    context.update(request.resource_attributes)
    context.update({key: stringify(value) for key, value in request.environment.items()})
    context["user.id"] = request.user_id
    context["action"] = request.action
    context["resource.type"] = request.resource_type
    if request.resource_id is not None:
        context["resource.id"] = request.resource_id
    context["environment.hour"] = str(now.hour)
    context["environment.day_of_week"] = _WEEKDAYS[now.weekday()]
    context["environment.date"] = now.strftime("%Y-%m-%d")
    context["environment.timestamp"] = now.isoformat(timespec="seconds")
    return context


def _matches_entry(entry: str, value: str) -> bool:
    if entry == "*" or entry == value:
        return True
    # "project:*" covers "project:update" but not "planning:update".
    return entry.endswith("*") and value.startswith(entry[:-1])


def applies_to_action(actions: Iterable[str], action: str) -> bool:
    entries = list(actions)
    return not entries or any(_matches_entry(entry, action) for entry in entries)


def applies_to_resource(resources: Iterable[str], resource_type: str) -> bool:
    # Same trailing-wildcard rule as actions: "project*" covers "project_task".
    entries = list(resources)
    return not entries or any(_matches_entry(entry, resource_type) for entry in entries)


def evaluate_policy_set(
    *,
    policies: list[CompiledPolicy],
    request: PolicyRequest,
    context: Context,
    sink: EvaluationSink | None = None,
    started: float | None = None,
) -> PolicyDecision:
    """Evaluate compiled policies in the given order and combine with deny-override.

    A policy that cannot be evaluated is logged and skipped; it never aborts the
    decision. Matches are handed to ``sink`` without waiting for delivery.
    """
    started = started if started is not None else time.perf_counter()
    matched: list[str] = []
    deny_ids: list[str] = []
    allow_ids: list[str] = []

    for policy in policies:
        if not applies_to_action(policy.actions, request.action):
            continue
        if not applies_to_resource(policy.resources, request.resource_type):
            continue
        if policy.condition is None:
            logger.info("policy_condition_invalid policy_id=%s error=%s", policy.policy_id, policy.error)
            continue
        try:
            matches = evaluate_condition(policy.condition, context)
        except ConditionEvaluationError as exc:
            logger.info("policy_evaluation_error policy_id=%s error=%s", policy.policy_id, exc.message)
            continue
        if not matches:
            continue
        matched.append(policy.policy_id)
        if policy.effect == POLICY_EFFECT_DENY:
            deny_ids.append(policy.policy_id)
        elif policy.effect == POLICY_EFFECT_ALLOW:
            allow_ids.append(policy.policy_id)
        if sink is not None:
            sink.submit(
                EvaluationRecord(
                    policy_id=policy.policy_id,
                    user_id=request.user_id,
                    resource_type=request.resource_type,
                    resource_id=request.resource_id,
                    action=request.action,
                    effect=policy.effect,
                    context=dict(context),
                    duration_ms=int((time.perf_counter() - started) * 1000),
                )
            )

    if deny_ids:
        allowed, effect, reason = False, POLICY_EFFECT_DENY, f"Denied by {len(deny_ids)} policy(ies)"
    elif allow_ids:
        allowed, effect, reason = True, POLICY_EFFECT_ALLOW, f"Allowed by {len(allow_ids)} policy(ies)"
    else:
        allowed, effect, reason = False, POLICY_EFFECT_DENY, "No matching policies found"
    return PolicyDecision(
        allowed=allowed,
        effect=effect,
        reason=reason,
        matched_policies=matched,
        context=context,
        evaluated_policies=len(policies),
    )


async def load_request(
    session: AsyncSession,
    *,
    user_id: str,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    environment: dict[str, Any] | None = None,
    extra_user_attributes: dict[str, str] | None = None,
    now: datetime | None = None,
) -> PolicyRequest:
    # Pull current attributes from the store; each lookup is an independent read.
    user_attributes = await attribute_store.get_user_attributes(session, user_id=user_id, now=now)
    user_attributes.update(extra_user_attributes or {})
    resource_attributes: dict[str, str] = {}
    if resource_id is not None:
        resource_attributes = await attribute_store.get_resource_attributes(
            session, resource_type=resource_type, resource_id=resource_id, now=now
        )
    return PolicyRequest(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        user_attributes=user_attributes,
        resource_attributes=resource_attributes,
        environment=dict(environment or {}),
    )


async def evaluate(
    session: AsyncSession,
    *,
    request: PolicyRequest,
    sink: EvaluationSink | None = None,
    business_vertical_id: str | None = None,
    now: datetime | None = None,
) -> PolicyDecision:
    started = time.perf_counter()
    now = now or _utc_now()
    context = build_context(request, now=now)
    if not get_settings().authz_abac_enabled:
        return PolicyDecision(
            allowed=True,
            effect=POLICY_EFFECT_ALLOW,
            reason="ABAC evaluation disabled",
            matched_policies=[],
            context=context,
            evaluated_policies=0,
        )
    rows = await policies_repo.list_effective_policies(
        session, now=now, business_vertical_id=business_vertical_id
    )
    return evaluate_policy_set(
        policies=[compile_policy(row) for row in rows],
        request=request,
        context=context,
        sink=sink,
        started=started,
    )


async def test_policy(
    session: AsyncSession,
    *,
    policy_id: str,
    request: PolicyRequest,
    now: datetime | None = None,
) -> PolicyDecision:
    # Dry run of one policy regardless of status; nothing is audited.
    policy = await policies_repo.get_policy(session, policy_id=policy_id)
    if policy is None:
        raise PolicyNotFoundError()
    context = build_context(request, now=now)
    condition = parse_condition(policy.conditions)
    matches = evaluate_condition(condition, context)
    if matches:
        reason = f"Policy '{policy.display_name}' matched"
    else:
        reason = f"Policy '{policy.display_name}' did not match"
    return PolicyDecision(
        allowed=matches and policy.effect == POLICY_EFFECT_ALLOW,
        effect=policy.effect,
        reason=reason,
        matched_policies=[policy.id] if matches else [],
        context=context,
        evaluated_policies=1,
    )
