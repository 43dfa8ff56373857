from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import Any, Union

from verticalguard.core.errors import (
    ConditionEvaluationError,
    ConditionTooComplexError,
    InvalidConditionError,
)


@dataclass(frozen=True)
class And:
    children: tuple["ConditionNode", ...]


@dataclass(frozen=True)
class Or:
    children: tuple["ConditionNode", ...]


@dataclass(frozen=True)
class Not:
    child: "ConditionNode"


@dataclass(frozen=True)
class Leaf:
    attribute: str
    operator: str
    value: Any


ConditionNode = Union[And, Or, Not, Leaf]

Context = dict[str, str]

_LOGICAL_KEYS = {"AND", "OR", "NOT"}
_LEAF_FIELDS = ("attribute", "operator", "value")

_EQUALS = {"=", "==", "EQUALS"}
_NOT_EQUALS = {"!=", "NOT_EQUALS"}
_NUMERIC = {
    ">": "gt",
    "GREATER_THAN": "gt",
    "<": "lt",
    "LESS_THAN": "lt",
    ">=": "gte",
    "GREATER_THAN_OR_EQUAL": "gte",
    "<=": "lte",
    "LESS_THAN_OR_EQUAL": "lte",
}
_STRING_OPERATORS = {"CONTAINS", "STARTS_WITH", "ENDS_WITH", "MATCHES"}
_RANGE_OPERATORS = {"BETWEEN", "NOT_BETWEEN"}
_SET_OPERATORS = {"IN", "NOT_IN"}

SUPPORTED_OPERATORS = frozenset(
    _EQUALS | _NOT_EQUALS | set(_NUMERIC) | _STRING_OPERATORS | _RANGE_OPERATORS | _SET_OPERATORS
)


def policy_size_bytes(value: Any) -> int:
    # Measure serialized condition size for policy complexity enforcement.
    return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def parse_condition(
    raw: Any,
    *,
    max_depth: int | None = None,
    max_bytes: int | None = None,
) -> ConditionNode:
    """Parse a stored condition document into a typed tree.

    Logical nodes are single-key objects ``{"AND": [...]}``, ``{"OR": [...]}`` or
    ``{"NOT": {...}}``; anything else must be a leaf carrying ``attribute``,
    ``operator`` and ``value``. Shape problems raise ``InvalidConditionError`` here
    so evaluation never has to re-check them.
    """
    if max_bytes is not None and policy_size_bytes(raw) > max_bytes:
        raise ConditionTooComplexError("Policy condition exceeds size limits")
    node = _parse_node(raw)
    if max_depth is not None:
        depth = condition_depth(node)
        if depth > max_depth:
            raise ConditionTooComplexError(f"Policy depth {depth} exceeds max {max_depth}")
    return node


def _parse_node(raw: Any) -> ConditionNode:
    if not isinstance(raw, dict) or not raw:
        raise InvalidConditionError("Conditions cannot be empty")
    if len(raw) == 1:
        key, payload = next(iter(raw.items()))
        logical = str(key).upper()
        if logical in _LOGICAL_KEYS:
            if logical == "NOT":
                return Not(child=_parse_node(payload))
            if not isinstance(payload, list):
                raise InvalidConditionError("Logical operator conditions must be an array")
            if not payload:
                raise InvalidConditionError("Logical operator must have at least one condition")
            children = tuple(_parse_node(item) for item in payload)
            return And(children=children) if logical == "AND" else Or(children=children)
    return _parse_leaf(raw)


def _parse_leaf(raw: dict[str, Any]) -> Leaf:
    for field in _LEAF_FIELDS:
        if field not in raw:
            raise InvalidConditionError(f"Condition must have '{field}' field")
    attribute = raw["attribute"]
    operator = raw["operator"]
    if not isinstance(attribute, str) or not attribute:
        raise InvalidConditionError("Condition attribute must be a non-empty string")
    if not isinstance(operator, str) or not operator:
        raise InvalidConditionError("Condition operator must be a non-empty string")
    normalized = operator.upper()
    if normalized not in SUPPORTED_OPERATORS:
        raise InvalidConditionError(f"Unsupported operator: {operator}")
    value = raw["value"]
    if normalized in _RANGE_OPERATORS and not _is_template(value):
        if not isinstance(value, list) or len(value) != 2:
            raise InvalidConditionError(f"{normalized} requires an array of 2 values")
    return Leaf(attribute=attribute, operator=normalized, value=value)


def condition_depth(node: ConditionNode) -> int:
    if isinstance(node, Leaf):
        return 1
    if isinstance(node, Not):
        return 1 + condition_depth(node.child)
    return 1 + max(condition_depth(child) for child in node.children)


def condition_to_dict(node: ConditionNode) -> dict[str, Any]:
    # Serialize back to the stored document shape.
    if isinstance(node, And):
        return {"AND": [condition_to_dict(child) for child in node.children]}
    if isinstance(node, Or):
        return {"OR": [condition_to_dict(child) for child in node.children]}
    if isinstance(node, Not):
        return {"NOT": condition_to_dict(node.child)}
    return {"attribute": node.attribute, "operator": node.operator, "value": node.value}


def evaluate_condition(node: ConditionNode, context: Context) -> bool:
    # AND/OR short-circuit; a missing attribute makes its leaf false rather than failing.
    if isinstance(node, And):
        for child in node.children:
            if not evaluate_condition(child, context):
                return False
        return True
    if isinstance(node, Or):
        for child in node.children:
            if evaluate_condition(child, context):
                return True
        return False
    if isinstance(node, Not):
        return not evaluate_condition(node.child, context)
    return _evaluate_leaf(node, context)


def _evaluate_leaf(leaf: Leaf, context: Context) -> bool:
    actual = context.get(leaf.attribute)
    if actual is None:
        return False
    expected = leaf.value
    if _is_template(expected):
        key = expected[2:-2].strip()
        if key not in context:
            return False
        expected = context[key]
    return evaluate_operator(str(actual), leaf.operator, expected)


def evaluate_operator(actual: str, operator: str, expected: Any) -> bool:
    op = operator.upper()
    if op in _EQUALS:
        return actual == stringify(expected)
    if op in _NOT_EQUALS:
        return actual != stringify(expected)
    if op in _NUMERIC:
        return _compare(actual, expected, op=_NUMERIC[op])
    if op == "IN":
        return _in_operator(actual, expected)
    if op == "NOT_IN":
        return not _in_operator(actual, expected)
    if op == "CONTAINS":
        return stringify(expected) in actual
    if op == "STARTS_WITH":
        return actual.startswith(stringify(expected))
    if op == "ENDS_WITH":
        return actual.endswith(stringify(expected))
    if op == "MATCHES":
        try:
            return re.search(stringify(expected), actual) is not None
        except re.error as exc:
            raise ConditionEvaluationError(f"Invalid pattern: {exc}") from exc
    if op in _RANGE_OPERATORS:
        inside = _between(actual, expected)
        if inside is None:
            return False
        return inside if op == "BETWEEN" else not inside
    raise ConditionEvaluationError(f"Unsupported operator: {operator}")


def stringify(value: Any) -> str:
    # Render JSON scalars the way they are stored as attribute values.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if value is None:
        return ""
    return str(value)


def _is_template(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("{{") and value.endswith("}}") and len(value) >= 4


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _compare(actual: str, expected: Any, *, op: str) -> bool:
    # Non-numeric operands never satisfy an ordering comparison.
    left = _to_float(actual)
    right = _to_float(expected)
    if left is None or right is None:
        return False
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    return left <= right


def _in_operator(actual: str, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    return any(actual == stringify(item) for item in expected)


def _between(actual: str, expected: Any) -> bool | None:
    # None marks a non-numeric operand, which fails both BETWEEN and NOT_BETWEEN.
    if not isinstance(expected, (list, tuple)) or len(expected) != 2:
        raise ConditionEvaluationError("BETWEEN requires an array of 2 values")
    value = _to_float(actual)
    low = _to_float(expected[0])
    high = _to_float(expected[1])
    if value is None or low is None or high is None:
        return None
    return low <= value <= high
