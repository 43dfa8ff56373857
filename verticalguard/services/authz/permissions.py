from __future__ import annotations

from collections.abc import Iterable


WILDCARD = "*"
SUPER_ADMIN_PERMISSION = "*:*:*"
_SEGMENT_SEPARATOR = ":"


def permission_matches(granted: str, required: str) -> bool:
    # Match one granted permission against a required name using segment wildcards.
    if granted == required:
        return True
    if granted in {SUPER_ADMIN_PERMISSION, WILDCARD}:
        return True
    granted_parts = granted.split(_SEGMENT_SEPARATOR)
    required_parts = required.split(_SEGMENT_SEPARATOR)
    if len(granted_parts) < 2 or len(required_parts) < 2:
        return False
    # A trailing wildcard segment covers any deeper scope, e.g. "project:*" vs "project:read:own".
    if len(granted_parts) < len(required_parts) and granted_parts[-1] == WILDCARD:
        granted_parts = granted_parts + [WILDCARD] * (len(required_parts) - len(granted_parts))
    if len(granted_parts) != len(required_parts):
        return False
    return all(
        granted_part == WILDCARD or granted_part == required_part
        for granted_part, required_part in zip(granted_parts, required_parts)
    )


def has_permission(granted: Iterable[str], required: str) -> bool:
    # Check whether any granted permission covers the required name.
    return any(permission_matches(permission, required) for permission in granted)


def can_assign_role(user_level: int, target_level: int) -> bool:
    # Only strictly lower-privilege (higher-numbered) roles may be granted.
    return user_level < target_level


def max_assignable_level(user_level: int) -> int:
    return user_level + 1
