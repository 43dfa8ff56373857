from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from verticalguard.core.config import Settings, get_settings, parse_csv_setting
from verticalguard.persistence.db import get_session
from verticalguard.services.audit import NullEvaluationSink
from verticalguard.services.authz import rbac
from verticalguard.services.authz.abac import EvaluationSink
from verticalguard.services.authz.ownership import OwnershipRegistry, default_registry
from verticalguard.services.authz.permissions import has_permission


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Verified identity; the declared role is a claim, never a grant.
    subject_id: str
    role: str | None = None
    auth_method: str = "dev_headers"


@dataclass(frozen=True)
class AccessControls:
    # Parsed once at startup and shared read-only by every request.
    api_keys: frozenset[str]
    ip_allowlist: frozenset[str]


def build_access_controls(settings: Settings) -> AccessControls:
    return AccessControls(
        api_keys=parse_csv_setting(settings.static_api_keys),
        ip_allowlist=parse_csv_setting(settings.ip_allowlist),
    )


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _access_controls(request: Request) -> AccessControls:
    controls = getattr(request.app.state, "access_controls", None)
    if controls is None:
        controls = build_access_controls(get_settings())
        request.app.state.access_controls = controls
    return controls


async def get_current_principal(
    request: Request,
    x_subject_id: str | None = Header(default=None),
    x_role: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> Principal:
    # Identity arrives pre-verified from the gateway; only transport allowlists are enforced here.
    controls = _access_controls(request)
    if controls.ip_allowlist:
        client_host = request.client.host if request.client else None
        if client_host not in controls.ip_allowlist:
            raise _forbidden_error("Client address is not allowed")
    if controls.api_keys and x_api_key not in controls.api_keys:
        raise _auth_error("Missing or invalid API key")
    verified = getattr(request.state, "principal", None)
    if isinstance(verified, Principal):
        return verified
    if not get_settings().auth_dev_headers_enabled:
        raise _auth_error("No verified principal")
    if not x_subject_id:
        raise _auth_error("Missing X-Subject-Id header")
    return Principal(subject_id=x_subject_id, role=x_role)


def get_audit_sink(request: Request) -> EvaluationSink:
    sink = getattr(request.app.state, "audit_sink", None)
    return sink if sink is not None else NullEvaluationSink()


def get_ownership_registry(request: Request) -> OwnershipRegistry:
    registry = getattr(request.app.state, "ownership", None)
    return registry if registry is not None else default_registry()


def require_permission(permission: str):
    # Dependency factory to enforce a global permission at the route level.
    async def _dependency(
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        subject = await rbac.resolve_permissions(db, subject_id=principal.subject_id)
        if not subject.is_super_admin and not has_permission(subject.permissions, permission):
            raise _forbidden_error(f"Missing permission {permission}")
        return principal

    return _dependency
