from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.core.config import settings
from app.schemas.rules import Rule, RuleGroup, tag_legacy_tree
from app.services.rule_engine import audience_of, matches, parse_timestamp, personalize_message, text_form


def _rule(field: str, operator: str, value) -> dict:
    return {"kind": "rule", "field": field, "operator": operator, "value": value}


def _group(logical_operator: str, *children: dict) -> RuleGroup:
    return RuleGroup.model_validate({"kind": "group", "logical_operator": logical_operator, "rules": list(children)})


def _customer(**overrides) -> dict:
    record = {
        "id": 1,
        "first_name": "Ada",
        "last_name": "Obi",
        "email": "ada@example.com",
        "phone": None,
        "status": "active",
        "total_spend": Decimal("1500.00"),
        "last_seen_at": datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        "created_at": datetime(2023, 1, 1, tzinfo=timezone.utc),
    }
    record.update(overrides)
    return record


def test_high_spender_and_active_example():
    rules = _group(
        "AND",
        _rule("total_spend", "greater_than", 1000),
        _rule("status", "equals", "active"),
    )
    spender = _customer(id=1, total_spend=Decimal("1500"), status="active")
    inactive_spender = _customer(id=2, total_spend=Decimal("2000"), status="inactive")
    small = _customer(id=3, total_spend=Decimal("500"), status="active")

    assert matches(spender, rules)
    assert not matches(inactive_spender, rules)
    assert not matches(small, rules)
    assert [row["id"] for row in audience_of(rules, [spender, inactive_spender, small])] == [1]


def test_or_group_and_nested_groups():
    rules = _group(
        "OR",
        _rule("status", "equals", "new"),
        {
            "kind": "group",
            "logical_operator": "AND",
            "rules": [
                _rule("total_spend", "greater_than", 100),
                _rule("email", "ends_with", "@example.com"),
            ],
        },
    )
    assert matches(_customer(status="new", total_spend=Decimal("0")), rules)
    assert matches(_customer(status="inactive", total_spend=Decimal("150")), rules)
    assert not matches(_customer(status="inactive", total_spend=Decimal("50")), rules)


def test_empty_groups_match_by_default_and_follow_the_flag():
    empty_and = _group("AND")
    empty_or = _group("OR")
    customer = _customer()

    assert matches(customer, empty_and)
    # Vacuous truth holds for OR as well, unlike any([]).
    assert matches(customer, empty_or)

    assert not matches(customer, empty_or, empty_group_matches=False)
    assert not matches(customer, empty_and, empty_group_matches=False)


def test_empty_group_setting_is_the_default_switch():
    original = settings.empty_rule_group_matches
    settings.empty_rule_group_matches = False
    try:
        assert not matches(_customer(), _group("AND"))
    finally:
        settings.empty_rule_group_matches = original


def test_absent_or_null_field_never_matches():
    customer = _customer(phone=None)
    for operator, value in [
        ("equals", "x"),
        ("not_equals", "x"),
        ("contains", "x"),
        ("not_contains", "x"),
        ("greater_than", 1),
        ("is_before", "2030-01-01"),
    ]:
        assert not matches(customer, _group("AND", _rule("phone", operator, value)))
        assert not matches(customer, _group("AND", _rule("loyalty_tier", operator, value)))


def test_equals_is_type_sensitive():
    customer = _customer(status="5", total_spend=Decimal("5"))
    assert matches(customer, _group("AND", _rule("total_spend", "equals", 5)))
    assert matches(customer, _group("AND", _rule("total_spend", "equals", 5.0)))
    assert not matches(customer, _group("AND", _rule("status", "equals", 5)))
    assert not matches(customer, _group("AND", _rule("total_spend", "equals", "5")))
    assert matches(customer, _group("AND", _rule("total_spend", "not_equals", "5")))


def test_ordering_coerces_numeric_strings_only():
    customer = _customer(total_spend=Decimal("250"))
    assert matches(customer, _group("AND", _rule("total_spend", "greater_than", "200")))
    assert not matches(customer, _group("AND", _rule("total_spend", "greater_than", "lots")))
    assert not matches(customer, _group("AND", _rule("total_spend", "less_than", True)))


def test_string_ordering_is_lexicographic():
    customer = _customer(last_name="Obi")
    assert matches(customer, _group("AND", _rule("last_name", "greater_than", "Adeyemi")))
    assert matches(customer, _group("AND", _rule("last_name", "less_than", "Zed")))


def test_text_operators_use_text_form():
    customer = _customer(first_name="Ada", total_spend=Decimal("1500.00"))
    assert matches(customer, _group("AND", _rule("first_name", "starts_with", "Ad")))
    assert matches(customer, _group("AND", _rule("email", "contains", "@example")))
    assert matches(customer, _group("AND", _rule("email", "not_contains", "gmail")))
    assert matches(customer, _group("AND", _rule("total_spend", "starts_with", "15")))
    assert matches(customer, _group("AND", _rule("total_spend", "ends_with", "500")))
    # Text operators are case sensitive.
    assert not matches(customer, _group("AND", _rule("first_name", "contains", "ada")))


def test_date_operators():
    customer = _customer(last_seen_at=datetime(2024, 3, 1, 12, 0))
    assert matches(customer, _group("AND", _rule("last_seen_at", "is_before", "2024-04-01")))
    assert matches(customer, _group("AND", _rule("last_seen_at", "is_after", "2024-02-01T00:00:00Z")))
    assert not matches(customer, _group("AND", _rule("last_seen_at", "is_after", "not a date")))
    assert matches(customer, _group("AND", _rule("lastSeen", "is_before", "2024-03-02")))
    # Epoch milliseconds for 2024-01-01T00:00:00Z.
    assert matches(customer, _group("AND", _rule("last_seen_at", "is_after", 1704067200000)))


def test_is_between_is_strict_on_both_ends():
    rule = _group("AND", _rule("total_spend", "is_between", [100, 200]))
    assert matches(_customer(total_spend=Decimal("150")), rule)
    assert not matches(_customer(total_spend=Decimal("100")), rule)
    assert not matches(_customer(total_spend=Decimal("200")), rule)

    dates = _group("AND", _rule("last_seen_at", "is_between", ["2024-01-01", "2024-12-31"]))
    assert matches(_customer(), dates)
    assert not matches(_customer(last_seen_at=datetime(2025, 1, 5, tzinfo=timezone.utc)), dates)


def test_camel_case_aliases_resolve():
    customer = _customer(first_name="Ada", total_spend=Decimal("900"))
    rules = _group(
        "AND",
        _rule("firstName", "equals", "Ada"),
        _rule("totalSpend", "less_than", 1000),
    )
    assert matches(customer, rules)


def test_evaluation_is_deterministic():
    rules = _group("OR", _rule("status", "equals", "active"), _rule("total_spend", "greater_than", 10))
    customer = _customer()
    assert len({matches(customer, rules) for _ in range(20)}) == 1


def test_audience_preserves_input_order():
    rules = _group("AND", _rule("status", "equals", "active"))
    customers = [_customer(id=index, status="active" if index % 2 else "inactive") for index in range(10, 0, -1)]
    assert [row["id"] for row in audience_of(rules, customers)] == [9, 7, 5, 3, 1]


def test_rule_tree_validation_rejects_malformed_nodes():
    with pytest.raises(ValidationError):
        _group("AND", _rule("status", "matches_regex", "a.*"))
    with pytest.raises(ValidationError):
        _group("XOR", _rule("status", "equals", "active"))
    with pytest.raises(ValidationError):
        _group("AND", _rule("total_spend", "is_between", [1, 2, 3]))
    with pytest.raises(ValidationError):
        _group("AND", _rule("total_spend", "equals", [1, 2]))
    with pytest.raises(ValidationError):
        _group("AND", {"kind": "rule", "field": "status", "operator": "equals", "value": "a", "rules": []})
    with pytest.raises(ValidationError):
        Rule.model_validate({"field": "", "operator": "equals", "value": "a"})


def test_rule_tree_depth_is_bounded():
    node: dict = {"kind": "group", "logical_operator": "AND", "rules": []}
    for _ in range(settings.rule_tree_max_depth):
        node = {"kind": "group", "logical_operator": "AND", "rules": [node]}
    with pytest.raises(ValidationError):
        RuleGroup.model_validate(node)


def test_legacy_untagged_tree_is_converted():
    tree = RuleGroup.model_validate(
        tag_legacy_tree(
            {
                "logicalOperator": "OR",
                "rules": [
                    {"field": "status", "operator": "equals", "value": "inactive"},
                    {"logicalOperator": "AND", "rules": [{"field": "totalSpend", "operator": "greater_than", "value": 5}]},
                ],
            }
        )
    )
    assert tree.logical_operator == "OR"
    assert isinstance(tree.rules[1], RuleGroup)
    assert tree.leaf_count() == 2
    assert tree.depth() == 2


def test_personalize_message_replaces_known_fields_only():
    customer = _customer(first_name="Ada", phone=None, total_spend=Decimal("20.00"))
    message = personalize_message(
        "Hi {{customer.first_name}} {{ customer.lastName }}, you spent {{customer.total_spend}}. "
        "Call {{customer.phone}} {{customer.loyalty_tier}}",
        customer,
    )
    assert message == "Hi Ada Obi, you spent 20. Call {{customer.phone}} {{customer.loyalty_tier}}"


def test_text_form_and_timestamp_parsing():
    assert text_form(True) == "true"
    assert text_form(12.0) == "12"
    assert text_form(12.5) == "12.5"
    assert text_form(datetime(2024, 1, 1)) == "2024-01-01T00:00:00+00:00"
    assert parse_timestamp("2024-01-01") == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_non_finite_numbers_are_rejected_and_never_crash_text_operators():
    for value in (float("inf"), float("-inf"), float("nan")):
        with pytest.raises(ValidationError):
            _group("AND", _rule("total_spend", "contains", value))
        with pytest.raises(ValidationError):
            _group("AND", _rule("total_spend", "is_between", [0, value]))

    assert text_form(float("inf")) == "inf"
    assert text_form(Decimal("NaN")) == "NaN"
    unchecked = RuleGroup.model_construct(
        kind="group",
        logical_operator="AND",
        rules=[Rule.model_construct(kind="rule", field="total_spend", operator="contains", value=float("inf"))],
    )
    assert matches(_customer(total_spend=10), unchecked) is False
