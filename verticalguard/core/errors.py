from __future__ import annotations


class AuthzError(Exception):
    """Base error for verticalguard."""

    code = "AUTHZ_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class UnauthorizedError(AuthzError):
    """No verified principal, or the principal does not resolve to a user."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401


class BadRequestError(AuthzError):
    """Request references something that cannot be resolved."""

    code = "BAD_REQUEST"
    status_code = 400


class BusinessVerticalNotResolvedError(BadRequestError):
    """Business vertical identifier did not match an id, code or name."""

    code = "BUSINESS_VERTICAL_UNRESOLVED"


class InvalidInputError(AuthzError):
    """Malformed identifier or payload."""

    code = "INVALID_INPUT"
    status_code = 422


class InvalidConditionError(InvalidInputError):
    """Condition tree is empty or malformed."""

    code = "POLICY_CONDITION_INVALID"


class ConditionTooComplexError(InvalidInputError):
    """Condition tree exceeds depth or size limits."""

    code = "POLICY_CONDITION_TOO_COMPLEX"


class NotFoundError(AuthzError):
    """Requested entity does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class UserNotFoundError(NotFoundError):
    """User not found."""

    code = "USER_NOT_FOUND"


class AttributeNotFoundError(NotFoundError):
    """Attribute definition or active assignment not found."""

    code = "ATTRIBUTE_NOT_FOUND"


class PolicyNotFoundError(NotFoundError):
    """Policy not found."""

    code = "POLICY_NOT_FOUND"


class ApprovalRequestNotFoundError(NotFoundError):
    """Approval request not found."""

    code = "APPROVAL_REQUEST_NOT_FOUND"


class RoleNotFoundError(NotFoundError):
    """Role not found."""

    code = "ROLE_NOT_FOUND"


class ConflictError(AuthzError):
    """Request conflicts with current state."""

    code = "CONFLICT"
    status_code = 409


class DuplicateNameError(ConflictError):
    """An entity with this name already exists."""

    code = "DUPLICATE_NAME"


class AlreadyDecidedError(ConflictError):
    """Approver already voted on this request."""

    code = "APPROVER_ALREADY_DECIDED"


class RequestNotPendingError(ConflictError):
    """Request already resolved."""

    code = "APPROVAL_REQUEST_RESOLVED"


class RoleAssignmentForbiddenError(AuthzError):
    """Target role level is not below the assigner's own level."""

    code = "ROLE_ASSIGNMENT_FORBIDDEN"
    status_code = 403


class ConditionEvaluationError(AuthzError):
    """A single policy failed to evaluate; the policy is treated as non-matching."""

    code = "POLICY_EVALUATION_ERROR"
    # Only surfaced by single-policy dry runs; full evaluations absorb it.
    status_code = 422


class InternalError(AuthzError):
    """Data store failure."""

    code = "INTERNAL_ERROR"
    status_code = 500
