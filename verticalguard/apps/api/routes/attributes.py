from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.apps.api.deps import Principal, get_db, require_permission
from verticalguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from verticalguard.apps.api.response import SuccessEnvelope, success_response
from verticalguard.domain.models import Attribute, ResourceAttribute, UserAttribute
from verticalguard.services import attributes as attribute_service


router = APIRouter(prefix="/attributes", tags=["attributes"], responses=DEFAULT_ERROR_RESPONSES)

_read = require_permission("attribute:read")
_write = require_permission("attribute:manage")


class AttributeCreateRequest(BaseModel):
    name: str
    display_name: str
    type: str
    data_type: str = "string"
    description: str | None = None
    is_system: bool = False
    metadata: dict[str, Any] | None = None

    model_config = {"extra": "forbid"}


class AttributeUpdateRequest(BaseModel):
    display_name: str | None = None
    description: str | None = None
    data_type: str | None = None
    is_active: bool | None = None
    metadata: dict[str, Any] | None = None

    model_config = {"extra": "forbid"}


class AttributeResponse(BaseModel):
    id: str
    name: str
    display_name: str
    description: str | None
    type: str
    data_type: str
    is_system: bool
    is_active: bool
    metadata: dict[str, Any]


class AssignmentRequest(BaseModel):
    value: str
    valid_until: datetime | None = None

    model_config = {"extra": "forbid"}


class BulkAssignmentRequest(BaseModel):
    attributes: dict[str, str]

    model_config = {"extra": "forbid"}


class AssignmentResponse(BaseModel):
    id: str
    attribute_id: str
    value: str
    is_active: bool
    valid_from: datetime
    valid_until: datetime | None
    assigned_by: str | None
    created_at: datetime


def _attribute_payload(attribute: Attribute) -> dict[str, Any]:
    return AttributeResponse(
        id=attribute.id,
        name=attribute.name,
        display_name=attribute.display_name,
        description=attribute.description,
        type=attribute.type,
        data_type=attribute.data_type,
        is_system=attribute.is_system,
        is_active=attribute.is_active,
        metadata=dict(attribute.metadata_json or {}),
    ).model_dump(mode="json")


def _assignment_payload(row: UserAttribute | ResourceAttribute) -> dict[str, Any]:
    return AssignmentResponse(
        id=row.id,
        attribute_id=row.attribute_id,
        value=row.value,
        is_active=row.is_active,
        valid_from=row.valid_from,
        valid_until=row.valid_until,
        assigned_by=row.assigned_by,
        created_at=row.created_at,
    ).model_dump(mode="json")


@router.post("", status_code=201, response_model=SuccessEnvelope[AttributeResponse])
async def create_attribute(
    request: Request,
    payload: AttributeCreateRequest,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    attribute = await attribute_service.create_attribute(
        db,
        name=payload.name,
        display_name=payload.display_name,
        attribute_type=payload.type,
        data_type=payload.data_type,
        description=payload.description,
        is_system=payload.is_system,
        metadata=payload.metadata,
    )
    return success_response(request=request, data=_attribute_payload(attribute))


@router.get("", response_model=SuccessEnvelope[list[AttributeResponse]])
async def list_attributes(
    request: Request,
    type: str | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await attribute_service.list_attributes(db, attribute_type=type, is_active=is_active)
    return success_response(request=request, data=[_attribute_payload(row) for row in rows])


@router.get("/by-name/{name}", response_model=SuccessEnvelope[AttributeResponse])
async def get_attribute(
    request: Request,
    name: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    attribute = await attribute_service.get_attribute_by_name(db, name=name)
    return success_response(request=request, data=_attribute_payload(attribute))


@router.patch("/{attribute_id}", response_model=SuccessEnvelope[AttributeResponse])
async def update_attribute(
    request: Request,
    attribute_id: str,
    payload: AttributeUpdateRequest,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    updates = payload.model_dump(exclude_unset=True)
    if "metadata" in updates:
        updates["metadata_json"] = updates.pop("metadata") or {}
    attribute = await attribute_service.update_attribute(db, attribute_id=attribute_id, updates=updates)
    return success_response(request=request, data=_attribute_payload(attribute))


@router.delete("/{attribute_id}", status_code=204)
async def delete_attribute(
    attribute_id: str,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> None:
    await attribute_service.delete_attribute(db, attribute_id=attribute_id)


@router.get("/users/{user_id}", response_model=SuccessEnvelope[dict[str, str]])
async def get_user_attributes(
    request: Request,
    user_id: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    values = await attribute_service.get_user_attributes(db, user_id=user_id)
    return success_response(request=request, data=values)


@router.put("/users/{user_id}/{attribute_name}", response_model=SuccessEnvelope[AssignmentResponse])
async def assign_user_attribute(
    request: Request,
    user_id: str,
    attribute_name: str,
    payload: AssignmentRequest,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await attribute_service.assign_user_attribute(
        db,
        user_id=user_id,
        attribute_name=attribute_name,
        value=payload.value,
        valid_until=payload.valid_until,
        assigned_by=principal.subject_id,
    )
    return success_response(request=request, data=_assignment_payload(row))


@router.post("/users/{user_id}/bulk", response_model=SuccessEnvelope[list[AssignmentResponse]])
async def bulk_assign_user_attributes(
    request: Request,
    user_id: str,
    payload: BulkAssignmentRequest,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await attribute_service.bulk_assign_user_attributes(
        db, user_id=user_id, attributes=payload.attributes, assigned_by=principal.subject_id
    )
    return success_response(request=request, data=[_assignment_payload(row) for row in rows])


@router.delete("/users/{user_id}/{attribute_name}", status_code=204)
async def remove_user_attribute(
    user_id: str,
    attribute_name: str,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> None:
    await attribute_service.remove_user_attribute(db, user_id=user_id, attribute_name=attribute_name)


@router.get(
    "/users/{user_id}/{attribute_name}/history",
    response_model=SuccessEnvelope[list[AssignmentResponse]],
)
async def user_attribute_history(
    request: Request,
    user_id: str,
    attribute_name: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await attribute_service.get_user_attribute_history(
        db, user_id=user_id, attribute_name=attribute_name
    )
    return success_response(request=request, data=[_assignment_payload(row) for row in rows])


@router.get(
    "/resources/{resource_type}/{resource_id}",
    response_model=SuccessEnvelope[dict[str, str]],
)
async def get_resource_attributes(
    request: Request,
    resource_type: str,
    resource_id: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    values = await attribute_service.get_resource_attributes(
        db, resource_type=resource_type, resource_id=resource_id
    )
    return success_response(request=request, data=values)


@router.put(
    "/resources/{resource_type}/{resource_id}/{attribute_name}",
    response_model=SuccessEnvelope[AssignmentResponse],
)
async def assign_resource_attribute(
    request: Request,
    resource_type: str,
    resource_id: str,
    attribute_name: str,
    payload: AssignmentRequest,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await attribute_service.assign_resource_attribute(
        db,
        resource_type=resource_type,
        resource_id=resource_id,
        attribute_name=attribute_name,
        value=payload.value,
        valid_until=payload.valid_until,
        assigned_by=principal.subject_id,
    )
    return success_response(request=request, data=_assignment_payload(row))


@router.post(
    "/resources/{resource_type}/{resource_id}/bulk",
    response_model=SuccessEnvelope[list[AssignmentResponse]],
)
async def bulk_assign_resource_attributes(
    request: Request,
    resource_type: str,
    resource_id: str,
    payload: BulkAssignmentRequest,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await attribute_service.bulk_assign_resource_attributes(
        db,
        resource_type=resource_type,
        resource_id=resource_id,
        attributes=payload.attributes,
        assigned_by=principal.subject_id,
    )
    return success_response(request=request, data=[_assignment_payload(row) for row in rows])


@router.delete("/resources/{resource_type}/{resource_id}/{attribute_name}", status_code=204)
async def remove_resource_attribute(
    resource_type: str,
    resource_id: str,
    attribute_name: str,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> None:
    await attribute_service.remove_resource_attribute(
        db, resource_type=resource_type, resource_id=resource_id, attribute_name=attribute_name
    )


@router.get(
    "/resources/{resource_type}/{resource_id}/{attribute_name}/history",
    response_model=SuccessEnvelope[list[AssignmentResponse]],
)
async def resource_attribute_history(
    request: Request,
    resource_type: str,
    resource_id: str,
    attribute_name: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await attribute_service.get_resource_attribute_history(
        db, resource_type=resource_type, resource_id=resource_id, attribute_name=attribute_name
    )
    return success_response(request=request, data=[_assignment_payload(row) for row in rows])
