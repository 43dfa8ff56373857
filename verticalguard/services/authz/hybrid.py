from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.core.config import get_settings
from verticalguard.domain.models import POLICY_EFFECT_ALLOW, POLICY_EFFECT_DENY
from verticalguard.services.authz import abac, rbac
from verticalguard.services.authz.abac import EvaluationSink
from verticalguard.services.authz.ownership import OwnershipRegistry, default_registry
from verticalguard.services.authz.permissions import has_permission


logger = logging.getLogger(__name__)

STAGE_SUPER_ADMIN = "super_admin"
STAGE_RBAC = "rbac"
STAGE_OWNERSHIP = "ownership"
STAGE_ABAC = "abac"


@dataclass(frozen=True)
class Decision:
    # Stage names the layer that produced the outcome.
    allowed: bool
    effect: str
    reason: str
    matched_policies: list[str]
    stage: str


def _deny(reason: str, stage: str) -> Decision:
    return Decision(
        allowed=False,
        effect=POLICY_EFFECT_DENY,
        reason=reason,
        matched_policies=[],
        stage=stage,
    )


async def authorize(
    session: AsyncSession,
    *,
    subject_id: str,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    business_vertical: str | None = None,
    environment: dict[str, Any] | None = None,
    declared_role: str | None = None,
    permission: str | None = None,
    sink: EvaluationSink | None = None,
    ownership: OwnershipRegistry | None = None,
    require_ownership: bool = False,
    now: datetime | None = None,
) -> Decision:
    """Combine role permissions and attribute policies into one decision.

    RBAC runs first and must grant ``permission`` (the action itself when not
    given); global permissions apply in every vertical. Only then are ABAC
    policies evaluated. Super admins are allowed before either stage.
    """
    settings = get_settings()
    subject = await rbac.resolve_permissions(session, subject_id=subject_id)
    if subject.is_super_admin:
        return Decision(
            allowed=True,
            effect=POLICY_EFFECT_ALLOW,
            reason="Super admin",
            matched_policies=[],
            stage=STAGE_SUPER_ADMIN,
        )
    if declared_role == settings.super_admin_role_name:
        # Declared claims are not trusted beyond this fast path; stored role state disagreed.
        logger.warning("declared_role_mismatch subject_id=%s declared_role=%s", subject_id, declared_role)

    required = permission or action
    granted = list(subject.permissions)
    vertical_id: str | None = None
    if business_vertical is not None:
        context = await rbac.resolve_business_context(
            session, subject_id=subject_id, business_vertical=business_vertical
        )
        vertical_id = context.business_vertical_id
        granted.extend(context.permissions)
    if not has_permission(granted, required):
        return _deny(f"Missing permission {required}", STAGE_RBAC)

    if require_ownership and resource_id is not None:
        registry = ownership or default_registry()
        owned = await registry.is_owner(
            session,
            user_id=subject.user_id,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        if not owned:
            return _deny("Not the resource owner", STAGE_OWNERSHIP)

    extra = {"user.role": subject.role_name} if subject.role_name else None
    request = await abac.load_request(
        session,
        user_id=subject.user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        environment=environment,
        extra_user_attributes=extra,
        now=now,
    )
    decision = await abac.evaluate(
        session,
        request=request,
        sink=sink,
        business_vertical_id=vertical_id,
        now=now,
    )
    return Decision(
        allowed=decision.allowed,
        effect=decision.effect,
        reason=decision.reason,
        matched_policies=list(decision.matched_policies),
        stage=STAGE_ABAC,
    )
