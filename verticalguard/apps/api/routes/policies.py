from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.apps.api.deps import Principal, get_db, require_permission
from verticalguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from verticalguard.apps.api.response import Page, SuccessEnvelope, page_response, success_response
from verticalguard.domain.models import Policy, PolicyChangeLog, PolicyEvaluation, PolicyVersion
from verticalguard.services import history
from verticalguard.services import policies as policy_service
from verticalguard.services.authz import abac


router = APIRouter(prefix="/policies", tags=["policies"], responses=DEFAULT_ERROR_RESPONSES)

_read = require_permission("policy:read")
_write = require_permission("policy:manage")


class PolicyCreateRequest(BaseModel):
    name: str
    display_name: str | None = None
    description: str | None = None
    effect: str
    priority: int = 0
    status: str | None = None
    business_vertical_id: str | None = None
    conditions: dict[str, Any]
    actions: list[str] | None = None
    resources: list[str] | None = None
    metadata: dict[str, Any] | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None

    model_config = {"extra": "forbid"}


class PolicyUpdateRequest(BaseModel):
    display_name: str | None = None
    description: str | None = None
    effect: str | None = None
    priority: int | None = None
    status: str | None = None
    business_vertical_id: str | None = None
    conditions: dict[str, Any] | None = None
    actions: list[str] | None = None
    resources: list[str] | None = None
    metadata: dict[str, Any] | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    reason: str | None = None

    model_config = {"extra": "forbid"}


class PolicyCloneRequest(BaseModel):
    new_name: str

    model_config = {"extra": "forbid"}


class PolicyTestRequest(BaseModel):
    # Explicit attribute maps replace the stored ones for what-if testing.
    user_id: str
    action: str
    resource_type: str
    resource_id: str | None = None
    user_attributes: dict[str, str] | None = None
    resource_attributes: dict[str, str] | None = None
    environment: dict[str, Any] | None = None

    model_config = {"extra": "forbid"}


class SnapshotRequest(BaseModel):
    change_notes: str | None = None

    model_config = {"extra": "forbid"}


class PolicyResponse(BaseModel):
    id: str
    name: str
    display_name: str
    description: str | None
    effect: str
    priority: int
    status: str
    business_vertical_id: str | None
    conditions: dict[str, Any]
    actions: list[str]
    resources: list[str]
    metadata: dict[str, Any]
    valid_from: datetime | None
    valid_until: datetime | None
    created_by: str
    updated_by: str | None
    created_at: datetime | None
    updated_at: datetime | None


class PolicyTestResponse(BaseModel):
    allowed: bool
    effect: str
    reason: str
    matched_policies: list[str]
    context: dict[str, str]


class PolicyStatisticsResponse(BaseModel):
    by_status: dict[str, int]
    by_effect: dict[str, int]
    total_evaluations: int
    recent_evaluations: int


class EvaluationResponse(BaseModel):
    id: str
    policy_id: str
    user_id: str
    resource_type: str
    resource_id: str | None
    action: str
    effect: str
    context: dict[str, Any]
    evaluated_at: datetime
    duration_ms: int


class VersionResponse(BaseModel):
    id: str
    policy_id: str
    version: int
    name: str
    display_name: str
    effect: str
    priority: int
    status: str
    conditions: dict[str, Any]
    actions: list[str]
    resources: list[str]
    created_by: str
    change_notes: str | None
    created_at: datetime


class ChangeLogResponse(BaseModel):
    id: str
    policy_id: str
    version_id: str | None
    action: str
    changed_by: str
    changes: dict[str, Any]
    reason: str | None
    created_at: datetime


def _policy_payload(policy: Policy) -> dict[str, Any]:
    return PolicyResponse(
        id=policy.id,
        name=policy.name,
        display_name=policy.display_name,
        description=policy.description,
        effect=policy.effect,
        priority=policy.priority,
        status=policy.status,
        business_vertical_id=policy.business_vertical_id,
        conditions=policy.conditions,
        actions=list(policy.actions or []),
        resources=list(policy.resources or []),
        metadata=dict(policy.metadata_json or {}),
        valid_from=policy.valid_from,
        valid_until=policy.valid_until,
        created_by=policy.created_by,
        updated_by=policy.updated_by,
        created_at=policy.created_at,
        updated_at=policy.updated_at,
    ).model_dump(mode="json")


def _evaluation_payload(row: PolicyEvaluation) -> dict[str, Any]:
    return EvaluationResponse(
        id=row.id,
        policy_id=row.policy_id,
        user_id=row.user_id,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        action=row.action,
        effect=row.effect,
        context=dict(row.context_json or {}),
        evaluated_at=row.evaluated_at,
        duration_ms=row.duration_ms,
    ).model_dump(mode="json")


def _version_payload(row: PolicyVersion) -> dict[str, Any]:
    return VersionResponse(
        id=row.id,
        policy_id=row.policy_id,
        version=row.version,
        name=row.name,
        display_name=row.display_name,
        effect=row.effect,
        priority=row.priority,
        status=row.status,
        conditions=row.conditions,
        actions=list(row.actions or []),
        resources=list(row.resources or []),
        created_by=row.created_by,
        change_notes=row.change_notes,
        created_at=row.created_at,
    ).model_dump(mode="json")


def _change_log_payload(row: PolicyChangeLog) -> dict[str, Any]:
    return ChangeLogResponse(
        id=row.id,
        policy_id=row.policy_id,
        version_id=row.version_id,
        action=row.action,
        changed_by=row.changed_by,
        changes=dict(row.changes_json or {}),
        reason=row.reason,
        created_at=row.created_at,
    ).model_dump(mode="json")


@router.post("", status_code=201, response_model=SuccessEnvelope[PolicyResponse])
async def create_policy(
    request: Request,
    payload: PolicyCreateRequest,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await policy_service.create_policy(
        db,
        name=payload.name,
        display_name=payload.display_name or payload.name,
        description=payload.description,
        effect=payload.effect,
        priority=payload.priority,
        status=payload.status,
        business_vertical_id=payload.business_vertical_id,
        conditions=payload.conditions,
        actions=payload.actions,
        resources=payload.resources,
        metadata=payload.metadata,
        valid_from=payload.valid_from,
        valid_until=payload.valid_until,
        created_by=principal.subject_id,
    )
    return success_response(request=request, data=_policy_payload(policy))


@router.get("", response_model=SuccessEnvelope[Page[PolicyResponse]])
async def list_policies(
    request: Request,
    status: str | None = Query(default=None),
    business_vertical_id: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    offset: int | None = Query(default=None, ge=0),
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items, total = await policy_service.list_policies(
        db,
        status=status,
        business_vertical_id=business_vertical_id,
        limit=limit,
        offset=offset,
    )
    return page_response(
        request=request,
        items=[_policy_payload(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/statistics", response_model=SuccessEnvelope[PolicyStatisticsResponse])
async def policy_statistics(
    request: Request,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    stats = await policy_service.get_policy_statistics(db)
    return success_response(request=request, data=stats)


@router.get("/evaluations", response_model=SuccessEnvelope[Page[EvaluationResponse]])
async def list_evaluations(
    request: Request,
    policy_id: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    offset: int | None = Query(default=None, ge=0),
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items, total = await policy_service.list_policy_evaluations(
        db, policy_id=policy_id, user_id=user_id, limit=limit, offset=offset
    )
    return page_response(
        request=request,
        items=[_evaluation_payload(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{policy_id}", response_model=SuccessEnvelope[PolicyResponse])
async def get_policy(
    request: Request,
    policy_id: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await policy_service.get_policy(db, policy_id=policy_id)
    return success_response(request=request, data=_policy_payload(policy))


@router.patch("/{policy_id}", response_model=SuccessEnvelope[PolicyResponse])
async def update_policy(
    request: Request,
    policy_id: str,
    payload: PolicyUpdateRequest,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    reason = changes.pop("reason", None)
    policy = await policy_service.update_policy(
        db,
        policy_id=policy_id,
        changes=changes,
        updated_by=principal.subject_id,
        reason=reason,
    )
    return success_response(request=request, data=_policy_payload(policy))


@router.delete("/{policy_id}", status_code=204)
async def delete_policy(
    policy_id: str,
    reason: str | None = Query(default=None),
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> None:
    await policy_service.delete_policy(
        db, policy_id=policy_id, deleted_by=principal.subject_id, reason=reason
    )


@router.post("/{policy_id}/activate", response_model=SuccessEnvelope[PolicyResponse])
async def activate_policy(
    request: Request,
    policy_id: str,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await policy_service.activate_policy(
        db, policy_id=policy_id, updated_by=principal.subject_id
    )
    return success_response(request=request, data=_policy_payload(policy))


@router.post("/{policy_id}/deactivate", response_model=SuccessEnvelope[PolicyResponse])
async def deactivate_policy(
    request: Request,
    policy_id: str,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await policy_service.deactivate_policy(
        db, policy_id=policy_id, updated_by=principal.subject_id
    )
    return success_response(request=request, data=_policy_payload(policy))


@router.post("/{policy_id}/clone", status_code=201, response_model=SuccessEnvelope[PolicyResponse])
async def clone_policy(
    request: Request,
    policy_id: str,
    payload: PolicyCloneRequest,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await policy_service.clone_policy(
        db, policy_id=policy_id, new_name=payload.new_name, created_by=principal.subject_id
    )
    return success_response(request=request, data=_policy_payload(policy))


@router.post("/{policy_id}/test", response_model=SuccessEnvelope[PolicyTestResponse])
async def dry_run_policy(
    request: Request,
    policy_id: str,
    payload: PolicyTestRequest,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy_request = await abac.load_request(
        db,
        user_id=payload.user_id,
        action=payload.action,
        resource_type=payload.resource_type,
        resource_id=payload.resource_id,
        environment=payload.environment,
    )
    if payload.user_attributes is not None:
        policy_request = replace(policy_request, user_attributes=dict(payload.user_attributes))
    if payload.resource_attributes is not None:
        policy_request = replace(policy_request, resource_attributes=dict(payload.resource_attributes))
    decision = await abac.test_policy(db, policy_id=policy_id, request=policy_request)
    data = PolicyTestResponse(
        allowed=decision.allowed,
        effect=decision.effect,
        reason=decision.reason,
        matched_policies=decision.matched_policies,
        context=decision.context,
    )
    return success_response(request=request, data=data)


@router.get("/{policy_id}/versions", response_model=SuccessEnvelope[list[VersionResponse]])
async def list_versions(
    request: Request,
    policy_id: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    versions = await history.get_policy_versions(db, policy_id=policy_id)
    return success_response(request=request, data=[_version_payload(row) for row in versions])


@router.post("/{policy_id}/versions", status_code=201, response_model=SuccessEnvelope[VersionResponse])
async def snapshot_policy(
    request: Request,
    policy_id: str,
    payload: SnapshotRequest,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    version = await history.snapshot_policy(
        db, policy_id=policy_id, created_by=principal.subject_id, change_notes=payload.change_notes
    )
    return success_response(request=request, data=_version_payload(version))


@router.get("/{policy_id}/change-logs", response_model=SuccessEnvelope[Page[ChangeLogResponse]])
async def list_change_logs(
    request: Request,
    policy_id: str,
    limit: int | None = Query(default=None, ge=1),
    offset: int | None = Query(default=None, ge=0),
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items, total = await history.get_policy_change_logs(
        db, policy_id=policy_id, limit=limit, offset=offset
    )
    return page_response(
        request=request,
        items=[_change_log_payload(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )
