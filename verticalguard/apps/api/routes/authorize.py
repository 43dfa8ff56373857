from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.apps.api.deps import (
    Principal,
    get_audit_sink,
    get_current_principal,
    get_db,
    get_ownership_registry,
    require_permission,
)
from verticalguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from verticalguard.apps.api.response import SuccessEnvelope, success_response
from verticalguard.services.authz import abac, hybrid, rbac
from verticalguard.services.authz.abac import EvaluationSink
from verticalguard.services.authz.ownership import OwnershipRegistry


router = APIRouter(tags=["authorization"], responses=DEFAULT_ERROR_RESPONSES)


class AuthorizeRequest(BaseModel):
    action: str
    resource_type: str
    resource_id: str | None = None
    business_vertical: str | None = None
    environment: dict[str, Any] | None = None
    permission: str | None = None
    require_ownership: bool = False

    model_config = {"extra": "forbid"}


class AuthorizeResponse(BaseModel):
    # End users only learn the outcome and a coarse reason.
    allowed: bool
    effect: str
    reason: str


class EvaluateRequest(BaseModel):
    user_id: str
    action: str
    resource_type: str
    resource_id: str | None = None
    business_vertical_id: str | None = None
    environment: dict[str, Any] | None = None

    model_config = {"extra": "forbid"}


class EvaluationResponse(BaseModel):
    allowed: bool
    effect: str
    reason: str
    matched_policies: list[str]
    context: dict[str, str]
    evaluated_policies: int


class BusinessContextResponse(BaseModel):
    business_vertical_id: str
    business_vertical_code: str
    permissions: list[str]
    is_business_admin: bool
    is_super_admin: bool


class BusinessVerticalResponse(BaseModel):
    id: str
    name: str
    code: str


class SiteGrantResponse(BaseModel):
    site_id: str
    can_read: bool
    can_create: bool
    can_update: bool
    can_delete: bool


class RoleAssignmentRequest(BaseModel):
    user_id: str
    business_role_id: str

    model_config = {"extra": "forbid"}


class RoleAssignmentResponse(BaseModel):
    id: str
    user_id: str
    business_role_id: str
    assigned_by: str | None


class AssignableLevelResponse(BaseModel):
    role_level: int
    max_assignable_level: int


@router.post("/authorize", response_model=SuccessEnvelope[AuthorizeResponse])
async def authorize(
    request: Request,
    payload: AuthorizeRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    sink: EvaluationSink = Depends(get_audit_sink),
    ownership: OwnershipRegistry = Depends(get_ownership_registry),
) -> dict:
    decision = await hybrid.authorize(
        db,
        subject_id=principal.subject_id,
        action=payload.action,
        resource_type=payload.resource_type,
        resource_id=payload.resource_id,
        business_vertical=payload.business_vertical,
        environment=payload.environment,
        declared_role=principal.role,
        permission=payload.permission,
        sink=sink,
        ownership=ownership,
        require_ownership=payload.require_ownership,
    )
    data = AuthorizeResponse(allowed=decision.allowed, effect=decision.effect, reason=decision.reason)
    return success_response(request=request, data=data)


@router.post(
    "/authorize/evaluate",
    response_model=SuccessEnvelope[EvaluationResponse],
    dependencies=[Depends(require_permission("policy:read"))],
)
async def evaluate_policies(
    request: Request,
    payload: EvaluateRequest,
    db: AsyncSession = Depends(get_db),
    sink: EvaluationSink = Depends(get_audit_sink),
) -> dict:
    # Administrators see the matched policies and the full context.
    policy_request = await abac.load_request(
        db,
        user_id=payload.user_id,
        action=payload.action,
        resource_type=payload.resource_type,
        resource_id=payload.resource_id,
        environment=payload.environment,
    )
    decision = await abac.evaluate(
        db,
        request=policy_request,
        sink=sink,
        business_vertical_id=payload.business_vertical_id,
    )
    data = EvaluationResponse(
        allowed=decision.allowed,
        effect=decision.effect,
        reason=decision.reason,
        matched_policies=decision.matched_policies,
        context=decision.context,
        evaluated_policies=decision.evaluated_policies,
    )
    return success_response(request=request, data=data)


@router.get("/business-verticals", response_model=SuccessEnvelope[list[BusinessVerticalResponse]])
async def list_business_verticals(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    verticals = await rbac.get_accessible_business_verticals(db, subject_id=principal.subject_id)
    data = [
        BusinessVerticalResponse(id=vertical.id, name=vertical.name, code=vertical.code).model_dump()
        for vertical in verticals
    ]
    return success_response(request=request, data=data)


@router.get(
    "/business-verticals/{business_vertical}/context",
    response_model=SuccessEnvelope[BusinessContextResponse],
)
async def business_context(
    request: Request,
    business_vertical: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    context = await rbac.resolve_business_context(
        db, subject_id=principal.subject_id, business_vertical=business_vertical
    )
    data = BusinessContextResponse(
        business_vertical_id=context.business_vertical_id,
        business_vertical_code=context.business_vertical_code,
        permissions=context.permissions,
        is_business_admin=context.is_business_admin,
        is_super_admin=context.is_super_admin,
    )
    return success_response(request=request, data=data)


@router.get(
    "/business-verticals/{business_vertical}/sites",
    response_model=SuccessEnvelope[list[SiteGrantResponse]],
)
async def accessible_sites(
    request: Request,
    business_vertical: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    sites = await rbac.get_accessible_sites(
        db, subject_id=principal.subject_id, business_vertical=business_vertical
    )
    data = [
        SiteGrantResponse(
            site_id=site.site_id,
            can_read=site.can_read,
            can_create=site.can_create,
            can_update=site.can_update,
            can_delete=site.can_delete,
        ).model_dump()
        for site in sites
    ]
    return success_response(request=request, data=data)


@router.get("/roles/assignable-level", response_model=SuccessEnvelope[AssignableLevelResponse])
async def assignable_level(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    subject = await rbac.load_user(db, subject_id=principal.subject_id)
    level = await rbac.get_role_level(db, user_id=subject.id)
    data = AssignableLevelResponse(
        role_level=level,
        max_assignable_level=await rbac.get_max_assignable_level(db, user_id=subject.id),
    )
    return success_response(request=request, data=data)


@router.post(
    "/roles/assignments",
    status_code=201,
    response_model=SuccessEnvelope[RoleAssignmentResponse],
)
async def assign_business_role(
    request: Request,
    payload: RoleAssignmentRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # The level guard applies to every assigner, including business admins.
    assigner = await rbac.load_user(db, subject_id=principal.subject_id)
    row = await rbac.assign_business_role(
        db,
        assigner_id=assigner.id,
        user_id=payload.user_id,
        business_role_id=payload.business_role_id,
    )
    data = RoleAssignmentResponse(
        id=row.id,
        user_id=row.user_id,
        business_role_id=row.business_role_id,
        assigned_by=row.assigned_by,
    )
    return success_response(request=request, data=data)
