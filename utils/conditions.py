"""
Shared condition evaluator and variable renderer for flow nodes.

Evaluates ConditionRule objects against a session's variables.
Comparison is case-insensitive for the string operators; numeric operators
coerce both sides to float and fail closed on non-numeric input.
"""
from __future__ import annotations

import re
from typing import Any, Mapping

from models.schemas import ConditionRule


def _num(value: Any) -> float:
    return float(str(value).strip().replace(",", "."))


def _greater(a: str, b: str) -> bool:
    return _num(a) > _num(b)


def _less(a: str, b: str) -> bool:
    return _num(a) < _num(b)


OPERATORS: dict[str, Any] = {
    "equals": lambda a, b: a == b,
    "not_equals": lambda a, b: a != b,
    "contains": lambda a, b: b in a,
    "not_contains": lambda a, b: b not in a,
    "starts_with": lambda a, b: a.startswith(b),
    "ends_with": lambda a, b: a.endswith(b),
    "is_empty": lambda a, b: a.strip() == "",
    "is_not_empty": lambda a, b: a.strip() != "",
    "greater_than": _greater,
    "less_than": _less,
    "regex": lambda a, b: bool(re.search(b, a)),
}


def get_variable(variables: Mapping[str, Any], name: str) -> str:
    """Look up a variable, tolerating a leading '{{' / '}}' wrapper."""
    key = name.strip().strip("{}").strip()
    value = variables.get(key)
    return "" if value is None else str(value)


def evaluate_condition(rule: ConditionRule, variables: Mapping[str, Any]) -> bool:
    """Evaluate a single rule against session variables."""
    fn = OPERATORS.get(rule.operator)
    if fn is None:
        return False
    left = get_variable(variables, rule.variable).lower()
    right = "" if rule.value is None else str(rule.value).lower()
    try:
        return bool(fn(left, right))
    except (TypeError, ValueError, re.error):
        return False


def evaluate_conditions(rules: list[ConditionRule], variables: Mapping[str, Any], logic: str = "AND") -> bool:
    """Evaluate a rule set. Empty rule sets never match."""
    if not rules:
        return False
    results = (evaluate_condition(r, variables) for r in rules)
    if logic.upper() == "OR":
        return any(results)
    return all(results)


_VAR_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}|\{(\w+)\}")


def render_template(text: str, variables: Mapping[str, Any]) -> str:
    """Substitute {{name}} and {name}. Unknown names are left intact."""
    if not text:
        return text

    def replacer(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return _VAR_PATTERN.sub(replacer, text)
