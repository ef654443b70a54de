"""
Condition evaluator: quote attributes against workflow trigger conditions.

Pure functions, no side effects. Conditions are AND-combined; an empty list
matches every quote. Anything the evaluator cannot interpret (unknown type,
unknown operator, missing or malformed value) is a non-match, never an error.
"""

from typing import Any, Iterable

import structlog

from quote_approvals.models.quote import Quote
from quote_approvals.models.workflow import (
    AmountThresholdCondition,
    CustomerTypeCondition,
    DepartmentCondition,
    DiscountPercentageCondition,
    TriggerCondition,
)

logger = structlog.get_logger()

OPERATOR_ALIASES = {
    "greater_than": "gt",
    "less_than": "lt",
    "equals": "eq",
    "not_equals": "ne",
    "in_range": "between",
    "contains": "in",
}


def _normalize(operator: str) -> str:
    return OPERATOR_ALIASES.get(operator, operator)


def _compare_numeric(actual: float, operator: str, value: Any, secondary: Any) -> bool:
    try:
        if operator == "gt":
            return actual > float(value)
        if operator == "lt":
            return actual < float(value)
        if operator == "eq":
            return actual == float(value)
        if operator == "ne":
            return actual != float(value)
        if operator == "between":
            if value is None or secondary is None:
                return False
            low, high = sorted((float(value), float(secondary)))
            return low <= actual <= high
    except (TypeError, ValueError):
        return False
    return False


def _compare_label(actual: Any, operator: str, value: Any) -> bool:
    if actual is None or value is None:
        return False
    if operator == "eq":
        return isinstance(value, str) and actual == value
    if operator == "ne":
        return isinstance(value, str) and actual != value
    if operator == "in":
        return isinstance(value, list) and actual in value
    return False


def condition_matches(quote: Quote, condition: TriggerCondition) -> bool:
    operator = _normalize(condition.operator)

    if isinstance(condition, AmountThresholdCondition):
        return _compare_numeric(
            quote.total_cents, operator, condition.value, condition.secondary_value
        )
    if isinstance(condition, DiscountPercentageCondition):
        return _compare_numeric(
            quote.discount_rate, operator, condition.value, condition.secondary_value
        )
    if isinstance(condition, CustomerTypeCondition):
        return _compare_label(quote.customer_type, operator, condition.value)
    if isinstance(condition, DepartmentCondition):
        return _compare_label(quote.department_id, operator, condition.value)

    logger.debug("condition_type_unrecognized", type=condition.type, quote_id=quote.id)
    return False


def matched_conditions(
    quote: Quote, conditions: Iterable[TriggerCondition]
) -> list[TriggerCondition]:
    return [c for c in conditions if condition_matches(quote, c)]


def evaluate(quote: Quote, conditions: Iterable[TriggerCondition]) -> bool:
    """True iff every condition matches."""
    return all(condition_matches(quote, c) for c in conditions)
