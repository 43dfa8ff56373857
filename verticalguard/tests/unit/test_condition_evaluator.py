from __future__ import annotations

import pytest

from verticalguard.core.errors import (
    ConditionEvaluationError,
    ConditionTooComplexError,
    InvalidConditionError,
)
from verticalguard.services.authz.evaluator import (
    And,
    Leaf,
    Not,
    Or,
    condition_depth,
    condition_to_dict,
    evaluate_condition,
    evaluate_operator,
    parse_condition,
    stringify,
)


CONTEXT = {
    "user.department": "engineering",
    "user.clearance": "3",
    "user.email": "dev@example.com",
    "resource.owner": "u-1",
    "user.id": "u-1",
    "environment.hour": "10",
}


def _leaf(attribute: str, operator: str, value: object) -> dict:
    return {"attribute": attribute, "operator": operator, "value": value}


def test_operator_truth_table() -> None:
    cases = [
        (_leaf("user.department", "=", "engineering"), True),
        (_leaf("user.department", "equals", "engineering"), True),
        (_leaf("user.department", "!=", "sales"), True),
        (_leaf("user.clearance", ">", 2), True),
        (_leaf("user.clearance", ">=", "3"), True),
        (_leaf("user.clearance", "<", 3), False),
        (_leaf("user.clearance", "less_than_or_equal", 3), True),
        (_leaf("user.department", "IN", ["engineering", "ops"]), True),
        (_leaf("user.department", "NOT_IN", ["engineering"]), False),
        (_leaf("user.email", "CONTAINS", "@example"), True),
        (_leaf("user.email", "STARTS_WITH", "dev"), True),
        (_leaf("user.email", "ENDS_WITH", ".org"), False),
        (_leaf("user.email", "MATCHES", r"^[a-z]+@example\.com$"), True),
        (_leaf("environment.hour", "BETWEEN", [9, 17]), True),
        (_leaf("environment.hour", "BETWEEN", [10, 10]), True),
        (_leaf("environment.hour", "NOT_BETWEEN", [9, 17]), False),
        (_leaf("resource.owner", "=", "{{user.id}}"), True),
    ]
    for raw, expected in cases:
        assert evaluate_condition(parse_condition(raw), CONTEXT) is expected, raw


def test_missing_attribute_fails_closed() -> None:
    node = parse_condition(_leaf("user.region", "!=", "emea"))
    assert evaluate_condition(node, CONTEXT) is False


def test_unresolved_template_is_false() -> None:
    node = parse_condition(_leaf("resource.owner", "=", "{{user.manager}}"))
    assert evaluate_condition(node, CONTEXT) is False


def test_non_numeric_range_operands_are_false_not_errors() -> None:
    assert evaluate_operator("abc", "BETWEEN", [1, 5]) is False
    assert evaluate_operator("abc", "NOT_BETWEEN", [1, 5]) is False
    assert evaluate_operator("3", "BETWEEN", ["low", 5]) is False
    assert evaluate_operator("abc", ">", 1) is False


def test_logical_nodes_short_circuit_and_negate() -> None:
    raw = {
        "AND": [
            _leaf("user.department", "=", "engineering"),
            {"OR": [_leaf("user.clearance", ">", 5), _leaf("environment.hour", "<", 12)]},
            {"NOT": _leaf("user.department", "=", "sales")},
        ]
    }
    node = parse_condition(raw)
    assert isinstance(node, And)
    assert isinstance(node.children[1], Or)
    assert isinstance(node.children[2], Not)
    assert evaluate_condition(node, CONTEXT) is True
    assert condition_depth(node) == 3


def test_logical_keys_are_case_insensitive() -> None:
    node = parse_condition({"and": [_leaf("user.department", "=", "engineering")]})
    assert isinstance(node, And)
    assert condition_to_dict(node) == {
        "AND": [{"attribute": "user.department", "operator": "=", "value": "engineering"}]
    }


@pytest.mark.parametrize(
    "raw",
    [
        {},
        None,
        {"AND": []},
        {"OR": "not-a-list"},
        {"attribute": "user.department", "operator": "="},
        {"attribute": "", "operator": "=", "value": "x"},
        {"attribute": "user.clearance", "operator": "BETWEEN", "value": [1]},
    ],
)
def test_malformed_trees_rejected_at_parse_time(raw: object) -> None:
    with pytest.raises(InvalidConditionError):
        parse_condition(raw)


def test_unsupported_operator_rejected_at_parse_time() -> None:
    with pytest.raises(InvalidConditionError):
        parse_condition(_leaf("user.department", "SOUNDS_LIKE", "x"))


def test_unsupported_operator_on_prebuilt_leaf_is_an_evaluation_error() -> None:
    with pytest.raises(ConditionEvaluationError):
        evaluate_condition(Leaf(attribute="user.department", operator="SOUNDS_LIKE", value="x"), CONTEXT)


def test_invalid_regex_is_an_evaluation_error() -> None:
    with pytest.raises(ConditionEvaluationError):
        evaluate_operator("abc", "MATCHES", "([")


def test_depth_and_size_limits() -> None:
    deep: dict = _leaf("user.department", "=", "engineering")
    for _ in range(5):
        deep = {"NOT": deep}
    with pytest.raises(ConditionTooComplexError):
        parse_condition(deep, max_depth=3)
    with pytest.raises(ConditionTooComplexError):
        parse_condition(_leaf("user.department", "=", "x" * 200), max_bytes=64)


def test_stringify_matches_stored_attribute_values() -> None:
    assert stringify(True) == "true"
    assert stringify(3.0) == "3"
    assert stringify(2.5) == "2.5"
    assert stringify(None) == ""
