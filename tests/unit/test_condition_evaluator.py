"""
Unit tests for quote_approvals/services/condition_evaluator.py

Tests: numeric operators and aliases, between bounds, label operators,
       AND-combination, unknown types and malformed values.
"""

import pytest

from factories import make_quote
from quote_approvals.models.workflow import (
    AmountThresholdCondition,
    ApprovalWorkflow,
    CustomerTypeCondition,
    DepartmentCondition,
    DiscountPercentageCondition,
    UnrecognizedCondition,
)
from quote_approvals.services.condition_evaluator import (
    condition_matches,
    evaluate,
    matched_conditions,
)


@pytest.mark.parametrize(
    "operator,value,expected",
    [
        ("gt", 5_000_000, True),
        ("gt", 7_500_000, False),
        ("lt", 10_000_000, True),
        ("eq", 7_500_000, True),
        ("ne", 7_500_000, False),
        ("greater_than", 5_000_000, True),
        ("less_than", 5_000_000, False),
    ],
)
def test_amount_operators(operator, value, expected):
    quote = make_quote(total_cents=7_500_000)
    condition = AmountThresholdCondition(operator=operator, value=value)
    assert condition_matches(quote, condition) is expected


def test_between_is_inclusive_and_order_insensitive():
    quote = make_quote(total_cents=1_000_000)
    assert condition_matches(
        quote, AmountThresholdCondition(operator="between", value=1_000_000, secondary_value=2_000_000)
    )
    assert condition_matches(
        quote, AmountThresholdCondition(operator="in_range", value=2_000_000, secondary_value=1_000_000)
    )


def test_between_without_secondary_value_never_matches():
    quote = make_quote(total_cents=1_000_000)
    condition = AmountThresholdCondition(operator="between", value=0)
    assert condition_matches(quote, condition) is False


def test_discount_percentage():
    quote = make_quote(discount_rate=22.5)
    assert condition_matches(quote, DiscountPercentageCondition(operator="gt", value=20))
    assert not condition_matches(quote, DiscountPercentageCondition(operator="lt", value=20))


def test_customer_type_and_department_labels():
    quote = make_quote(customer_type="enterprise", department_id="sales")
    assert condition_matches(quote, CustomerTypeCondition(operator="eq", value="enterprise"))
    assert condition_matches(quote, CustomerTypeCondition(operator="not_equals", value="smb"))
    assert condition_matches(quote, DepartmentCondition(operator="in", value=["sales", "ops"]))
    assert not condition_matches(quote, DepartmentCondition(operator="contains", value=["ops"]))


def test_label_condition_on_missing_attribute_is_non_match():
    quote = make_quote(customer_type=None)
    assert not condition_matches(quote, CustomerTypeCondition(operator="eq", value="enterprise"))


def test_unknown_operator_is_non_match():
    quote = make_quote()
    assert not condition_matches(quote, AmountThresholdCondition(operator="approximately", value=1))


def test_unknown_condition_type_parses_and_never_matches():
    workflow = ApprovalWorkflow.model_validate({
        "name": "Legacy",
        "conditions": [{"type": "product_category", "operator": "eq", "value": "hardware"}],
    })
    assert isinstance(workflow.conditions[0], UnrecognizedCondition)
    assert evaluate(make_quote(), workflow.conditions) is False


def test_evaluate_requires_every_condition():
    quote = make_quote(total_cents=7_500_000, customer_type="smb")
    conditions = [
        AmountThresholdCondition(operator="gt", value=5_000_000),
        CustomerTypeCondition(operator="eq", value="enterprise"),
    ]
    assert evaluate(quote, conditions) is False
    assert matched_conditions(quote, conditions) == [conditions[0]]


def test_empty_condition_list_matches():
    assert evaluate(make_quote(), []) is True
