"""Conditional routing rules.

A rule fires after the signer at ``triggered_by`` order signs and its
condition holds against the document values (payload merged with every
submitted field value). All matching rules fire, in declared order.
"""
import logging
from typing import Any, List

logger = logging.getLogger(__name__)

OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains", "is_empty")
ACTIONS = ("activate_signer", "skip_signer", "add_signer", "complete")


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip()) or value in ([], {})


def _compare(left: Any, right: Any) -> int:
    try:
        a, b = float(left), float(right)
    except (TypeError, ValueError):
        a, b = str(left), str(right)
    return (a > b) - (a < b)


def evaluate_condition(condition: dict, values: dict) -> bool:
    operator = condition.get("operator")
    actual = values.get(condition.get("delimiter_key"))
    expected = condition.get("value")
    if operator == "is_empty":
        return _is_empty(actual)
    if _is_empty(actual):
        return False
    if operator == "equals":
        return str(actual) == str(expected)
    if operator == "not_equals":
        return str(actual) != str(expected)
    if operator == "greater_than":
        return _compare(actual, expected) > 0
    if operator == "less_than":
        return _compare(actual, expected) < 0
    if operator == "contains":
        return str(expected) in str(actual)
    logger.warning("unknown routing operator %r", operator)
    return False


def matching_actions(rules: List[dict], signer_order: int, values: dict) -> List[dict]:
    actions = []
    for rule in rules or []:
        if rule.get("triggered_by") != signer_order:
            continue
        if evaluate_condition(rule.get("condition") or {}, values):
            actions.append(rule.get("action") or {})
    return actions


def validate_rules(rules: List[dict]) -> List[str]:
    problems = []
    for idx, rule in enumerate(rules or []):
        condition = rule.get("condition") or {}
        action = rule.get("action") or {}
        if not isinstance(rule.get("triggered_by"), int):
            problems.append(f"rule {idx}: triggered_by must be a signing order")
        if condition.get("operator") not in OPERATORS:
            problems.append(f"rule {idx}: unknown operator {condition.get('operator')!r}")
        if not condition.get("delimiter_key"):
            problems.append(f"rule {idx}: condition needs a delimiter_key")
        kind = action.get("type")
        if kind not in ACTIONS:
            problems.append(f"rule {idx}: unknown action {kind!r}")
        elif kind in ("activate_signer", "skip_signer") and not isinstance(action.get("target_order"), int):
            problems.append(f"rule {idx}: {kind} needs a target_order")
        elif kind == "add_signer" and not action.get("email"):
            problems.append(f"rule {idx}: add_signer needs an email")
    return problems
