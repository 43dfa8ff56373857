from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping JSON portable for sqlite-backed tests.
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


POLICY_EFFECT_ALLOW = "allow"
POLICY_EFFECT_DENY = "deny"
POLICY_EFFECTS = (POLICY_EFFECT_ALLOW, POLICY_EFFECT_DENY)

POLICY_STATUS_DRAFT = "draft"
POLICY_STATUS_ACTIVE = "active"
POLICY_STATUS_INACTIVE = "inactive"
POLICY_STATUSES = (POLICY_STATUS_DRAFT, POLICY_STATUS_ACTIVE, POLICY_STATUS_INACTIVE)

APPROVAL_STATUS_PENDING = "pending"
APPROVAL_STATUS_APPROVED = "approved"
APPROVAL_STATUS_REJECTED = "rejected"

REQUEST_TYPES = ("create", "update", "activate", "deactivate", "delete")

ATTRIBUTE_TYPES = ("user", "resource", "environment", "action")
ATTRIBUTE_DATA_TYPES = ("string", "integer", "float", "boolean", "datetime", "json", "array")


class Permission(Base):
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Names follow resource:action[:scope]; wildcard segments are matched, not stored specially.
    name: Mapped[str] = mapped_column(String(100), unique=True)
    resource: Mapped[str | None] = mapped_column(String(50), nullable=True)
    action: Mapped[str | None] = mapped_column(String(50), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(50), unique=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Lower number means higher privilege; 0 is reserved for super admins.
    level: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class RolePermission(Base):
    __tablename__ = "role_permissions"

    role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id"), primary_key=True)
    permission_id: Mapped[str] = mapped_column(String, ForeignKey("permissions.id"), primary_key=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100))
    email: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    # Global role is optional; business roles are granted separately per vertical.
    role_id: Mapped[str | None] = mapped_column(String, ForeignKey("roles.id"), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class BusinessVertical(Base):
    __tablename__ = "business_verticals"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    code: Mapped[str] = mapped_column(String(20), unique=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class BusinessRole(Base):
    __tablename__ = "business_roles"
    __table_args__ = (
        UniqueConstraint("business_vertical_id", "name", name="uq_business_roles_vertical_name"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    business_vertical_id: Mapped[str] = mapped_column(
        String, ForeignKey("business_verticals.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(50))
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class BusinessRolePermission(Base):
    __tablename__ = "business_role_permissions"

    business_role_id: Mapped[str] = mapped_column(
        String, ForeignKey("business_roles.id"), primary_key=True
    )
    permission_id: Mapped[str] = mapped_column(String, ForeignKey("permissions.id"), primary_key=True)


class UserBusinessRole(Base):
    __tablename__ = "user_business_roles"
    __table_args__ = (
        Index("ix_user_business_roles_user_active", "user_id", "is_active"),
    )

    # Rows are deactivated, never deleted, to preserve assignment history.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    business_role_id: Mapped[str] = mapped_column(String, ForeignKey("business_roles.id"), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100))
    code: Mapped[str] = mapped_column(String(50), unique=True)
    business_vertical_id: Mapped[str] = mapped_column(
        String, ForeignKey("business_verticals.id"), index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class UserSiteAccess(Base):
    __tablename__ = "user_site_access"
    __table_args__ = (
        UniqueConstraint("user_id", "site_id", name="uq_user_site_access_user_site"),
    )

    # Capability flags are independent; read does not imply create/update/delete.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    site_id: Mapped[str] = mapped_column(String, ForeignKey("sites.id"), index=True)
    can_read: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_create: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_update: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Attribute(Base):
    __tablename__ = "attributes"

    # Attribute names double as ABAC context keys, e.g. "user.department".
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    display_name: Mapped[str] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    type: Mapped[str] = mapped_column(String(50))
    data_type: Mapped[str] = mapped_column(String(50), default="string")
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class UserAttribute(Base):
    __tablename__ = "user_attributes"
    __table_args__ = (
        Index("ix_user_attributes_user_attribute", "user_id", "attribute_id"),
        # At most one active assignment per (user, attribute).
        Index(
            "uq_user_attributes_active",
            "user_id",
            "attribute_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    attribute_id: Mapped[str] = mapped_column(String, ForeignKey("attributes.id"))
    value: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class ResourceAttribute(Base):
    __tablename__ = "resource_attributes"
    __table_args__ = (
        Index("ix_resource_attributes_resource", "resource_type", "resource_id", "attribute_id"),
        Index(
            "uq_resource_attributes_active",
            "resource_type",
            "resource_id",
            "attribute_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    resource_type: Mapped[str] = mapped_column(String(50))
    resource_id: Mapped[str] = mapped_column(String)
    attribute_id: Mapped[str] = mapped_column(String, ForeignKey("attributes.id"))
    value: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Policy(Base):
    __tablename__ = "policies"
    __table_args__ = (
        Index("ix_policies_status_priority", "status", text("priority DESC")),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), unique=True)
    display_name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    effect: Mapped[str] = mapped_column(String(10))
    # Higher priority is evaluated first; deny still overrides allow.
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=POLICY_STATUS_DRAFT, nullable=False)
    # Null means the policy is global rather than scoped to one vertical.
    business_vertical_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("business_verticals.id"), nullable=True, index=True
    )
    conditions: Mapped[dict[str, Any]] = mapped_column(JsonType)
    actions: Mapped[list[str]] = mapped_column(JsonType, default=list)
    resources: Mapped[list[str]] = mapped_column(JsonType, default=list)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class PolicyEvaluation(Base):
    __tablename__ = "policy_evaluations"
    __table_args__ = (
        Index("ix_policy_evaluations_policy_time", "policy_id", "evaluated_at"),
        Index("ix_policy_evaluations_user_time", "user_id", "evaluated_at"),
    )

    # Append-only; policy_id is not a foreign key so audit rows outlive deleted policies.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    policy_id: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str] = mapped_column(String(50))
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String(100))
    effect: Mapped[str] = mapped_column(String(10))
    context_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class PolicyApprovalWorkflow(Base):
    __tablename__ = "policy_approval_workflows"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_type: Mapped[str] = mapped_column(String(50), index=True)
    required_approvals: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    approver_roles: Mapped[list[str]] = mapped_column(JsonType, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class PolicyApprovalRequest(Base):
    __tablename__ = "policy_approval_requests"
    __table_args__ = (
        Index("ix_policy_approval_requests_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    policy_id: Mapped[str] = mapped_column(String, index=True)
    policy_version_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_type: Mapped[str] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), default=APPROVAL_STATUS_PENDING, nullable=False)
    requested_by: Mapped[str] = mapped_column(String)
    request_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    required_approvals: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    received_approvals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    changes_proposed: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)


class PolicyApproval(Base):
    __tablename__ = "policy_approvals"
    __table_args__ = (
        # One decision per approver per request, approve or reject.
        UniqueConstraint("request_id", "approver_id", name="uq_policy_approvals_request_approver"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    request_id: Mapped[str] = mapped_column(
        String, ForeignKey("policy_approval_requests.id"), index=True
    )
    approver_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String(20))
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class PolicyVersion(Base):
    __tablename__ = "policy_versions"
    __table_args__ = (
        UniqueConstraint("policy_id", "version", name="uq_policy_versions_policy_version"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    policy_id: Mapped[str] = mapped_column(String, index=True)
    version: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(200))
    display_name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    effect: Mapped[str] = mapped_column(String(10))
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20))
    conditions: Mapped[dict[str, Any]] = mapped_column(JsonType)
    actions: Mapped[list[str]] = mapped_column(JsonType, default=list)
    resources: Mapped[list[str]] = mapped_column(JsonType, default=list)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    created_by: Mapped[str] = mapped_column(String)
    change_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class PolicyChangeLog(Base):
    __tablename__ = "policy_change_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    policy_id: Mapped[str] = mapped_column(String, index=True)
    version_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String(50))
    changed_by: Mapped[str] = mapped_column(String)
    changes_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
