from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.apps.api.deps import Principal, get_db, require_permission
from verticalguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from verticalguard.apps.api.response import Page, SuccessEnvelope, page_response, success_response
from verticalguard.domain.models import PolicyApproval, PolicyApprovalRequest, PolicyApprovalWorkflow
from verticalguard.services import approvals as approval_service


router = APIRouter(prefix="/approvals", tags=["approvals"], responses=DEFAULT_ERROR_RESPONSES)

_request = require_permission("approval:request")
_decide = require_permission("approval:decide")
_manage = require_permission("approval:manage")


class WorkflowCreateRequest(BaseModel):
    name: str
    request_type: str
    required_approvals: int = 1
    approver_roles: list[str] | None = None
    description: str | None = None
    priority: int = 0
    is_active: bool = True

    model_config = {"extra": "forbid"}


class WorkflowResponse(BaseModel):
    id: str
    name: str
    description: str | None
    request_type: str
    required_approvals: int
    approver_roles: list[str]
    is_active: bool
    priority: int


class ApprovalRequestCreate(BaseModel):
    policy_id: str
    request_type: str
    notes: str | None = None
    proposed_changes: dict[str, Any] | None = None

    model_config = {"extra": "forbid"}


class DecisionRequest(BaseModel):
    comments: str | None = None

    model_config = {"extra": "forbid"}


class ApprovalRequestResponse(BaseModel):
    id: str
    policy_id: str
    policy_version_id: str | None
    request_type: str
    status: str
    requested_by: str
    request_notes: str | None
    required_approvals: int
    received_approvals: int
    changes_proposed: dict[str, Any] | None
    created_at: datetime
    resolved_at: datetime | None
    resolved_by: str | None


class DecisionResponse(BaseModel):
    id: str
    approver_id: str
    status: str
    comments: str | None
    created_at: datetime


def _workflow_payload(workflow: PolicyApprovalWorkflow) -> dict[str, Any]:
    return WorkflowResponse(
        id=workflow.id,
        name=workflow.name,
        description=workflow.description,
        request_type=workflow.request_type,
        required_approvals=workflow.required_approvals,
        approver_roles=list(workflow.approver_roles or []),
        is_active=workflow.is_active,
        priority=workflow.priority,
    ).model_dump(mode="json")


def _request_payload(row: PolicyApprovalRequest) -> dict[str, Any]:
    return ApprovalRequestResponse(
        id=row.id,
        policy_id=row.policy_id,
        policy_version_id=row.policy_version_id,
        request_type=row.request_type,
        status=row.status,
        requested_by=row.requested_by,
        request_notes=row.request_notes,
        required_approvals=row.required_approvals,
        received_approvals=row.received_approvals,
        changes_proposed=row.changes_proposed,
        created_at=row.created_at,
        resolved_at=row.resolved_at,
        resolved_by=row.resolved_by,
    ).model_dump(mode="json")


def _decision_payload(row: PolicyApproval) -> dict[str, Any]:
    return DecisionResponse(
        id=row.id,
        approver_id=row.approver_id,
        status=row.status,
        comments=row.comments,
        created_at=row.created_at,
    ).model_dump(mode="json")


@router.post("/workflows", status_code=201, response_model=SuccessEnvelope[WorkflowResponse])
async def create_workflow(
    request: Request,
    payload: WorkflowCreateRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    workflow = await approval_service.create_workflow(
        db,
        name=payload.name,
        request_type=payload.request_type,
        required_approvals=payload.required_approvals,
        approver_roles=payload.approver_roles,
        description=payload.description,
        priority=payload.priority,
        is_active=payload.is_active,
    )
    return success_response(request=request, data=_workflow_payload(workflow))


@router.get("/workflows", response_model=SuccessEnvelope[list[WorkflowResponse]])
async def list_workflows(
    request: Request,
    principal: Principal = Depends(_request),
    db: AsyncSession = Depends(get_db),
) -> dict:
    workflows = await approval_service.list_workflows(db)
    return success_response(request=request, data=[_workflow_payload(row) for row in workflows])


@router.post("/requests", status_code=201, response_model=SuccessEnvelope[ApprovalRequestResponse])
async def create_request(
    request: Request,
    payload: ApprovalRequestCreate,
    principal: Principal = Depends(_request),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await approval_service.create_request(
        db,
        policy_id=payload.policy_id,
        request_type=payload.request_type,
        requested_by=principal.subject_id,
        notes=payload.notes,
        proposed_changes=payload.proposed_changes,
    )
    return success_response(request=request, data=_request_payload(row))


@router.get("/requests/pending", response_model=SuccessEnvelope[Page[ApprovalRequestResponse]])
async def list_pending_requests(
    request: Request,
    limit: int | None = Query(default=None, ge=1),
    offset: int | None = Query(default=None, ge=0),
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items, total = await approval_service.list_pending_requests(db, limit=limit, offset=offset)
    return page_response(
        request=request,
        items=[_request_payload(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/requests/mine", response_model=SuccessEnvelope[Page[ApprovalRequestResponse]])
async def list_my_pending_requests(
    request: Request,
    limit: int | None = Query(default=None, ge=1),
    offset: int | None = Query(default=None, ge=0),
    principal: Principal = Depends(_decide),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only requests this approver is still eligible to decide.
    items, total = await approval_service.list_user_pending_requests(
        db, approver_id=principal.subject_id, limit=limit, offset=offset
    )
    return page_response(
        request=request,
        items=[_request_payload(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/requests/{request_id}", response_model=SuccessEnvelope[ApprovalRequestResponse])
async def get_request(
    request: Request,
    request_id: str,
    principal: Principal = Depends(_request),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await approval_service.get_approval_request(db, request_id=request_id)
    return success_response(request=request, data=_request_payload(row))


@router.get("/requests/{request_id}/decisions", response_model=SuccessEnvelope[list[DecisionResponse]])
async def list_decisions(
    request: Request,
    request_id: str,
    principal: Principal = Depends(_request),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await approval_service.list_request_decisions(db, request_id=request_id)
    return success_response(request=request, data=[_decision_payload(row) for row in rows])


@router.post("/requests/{request_id}/approve", response_model=SuccessEnvelope[ApprovalRequestResponse])
async def approve_request(
    request: Request,
    request_id: str,
    payload: DecisionRequest,
    principal: Principal = Depends(_decide),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await approval_service.approve(
        db, request_id=request_id, approver_id=principal.subject_id, comments=payload.comments
    )
    return success_response(request=request, data=_request_payload(row))


@router.post("/requests/{request_id}/reject", response_model=SuccessEnvelope[ApprovalRequestResponse])
async def reject_request(
    request: Request,
    request_id: str,
    payload: DecisionRequest,
    principal: Principal = Depends(_decide),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await approval_service.reject(
        db, request_id=request_id, approver_id=principal.subject_id, comments=payload.comments
    )
    return success_response(request=request, data=_request_payload(row))
