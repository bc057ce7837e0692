"""Rule tree evaluation over customer records.

``matches`` is the single predicate used for segment snapshots, previews and
send-time audience resolution, so the three always agree for the same data.
Evaluation is total: a rule that cannot be applied to a record (absent or null
field, incomparable operand types, unparseable timestamps) is false rather than
an error.
"""

import asyncio
import math
import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.customer import Customer
from app.schemas.rules import Rule, RuleGroup


FIELD_ALIASES: dict[str, str] = {
    "firstName": "first_name",
    "lastName": "last_name",
    "totalSpend": "total_spend",
    "lastSeen": "last_seen_at",
    "lastSeenAt": "last_seen_at",
    "last_seen": "last_seen_at",
    "createdAt": "created_at",
}

_PLACEHOLDER_RE = re.compile(r"{{\s*customer\.([a-zA-Z0-9_]+)\s*}}")


def customer_record(customer: Customer) -> dict[str, Any]:
    return {
        "id": customer.id,
        "first_name": customer.first_name,
        "last_name": customer.last_name,
        "email": customer.email,
        "phone": customer.phone,
        "status": customer.status,
        "total_spend": customer.total_spend,
        "last_seen_at": customer.last_seen_at,
        "created_at": customer.created_at,
    }


def _as_record(customer: Customer | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(customer, Mapping):
        return customer
    return customer_record(customer)


def resolve_field(record: Mapping[str, Any], field: str) -> Any:
    if field in record:
        return record[field]
    alias = FIELD_ALIASES.get(field)
    if alias is not None:
        return record.get(alias)
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _number(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Best-effort conversion to an aware UTC datetime.

    Accepts datetimes, dates, ISO-8601 strings and epoch milliseconds. Naive
    values are taken to be UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif _is_number(value):
        try:
            return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def text_form(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (float, Decimal)) and math.isfinite(value) and value == int(value):
        return str(int(value))
    if isinstance(value, datetime):
        return parse_timestamp(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return float(left) == float(right)
    if isinstance(left, (datetime, date)):
        left_ts = parse_timestamp(left)
        right_ts = parse_timestamp(right)
        return right_ts is not None and left_ts == right_ts
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return False


def _compare(left: Any, right: Any) -> int | None:
    """Three-way comparison, or None when the operands have no common ordering."""
    if isinstance(left, bool) or isinstance(right, bool):
        return None

    if isinstance(left, (datetime, date)):
        left_ts = parse_timestamp(left)
        right_ts = parse_timestamp(right)
        if left_ts is None or right_ts is None:
            return None
        return (left_ts > right_ts) - (left_ts < right_ts)

    if _is_number(left) or _is_number(right):
        left_num = _number(left)
        right_num = _number(right)
        if left_num is None or right_num is None:
            return None
        return (left_num > right_num) - (left_num < right_num)

    if isinstance(left, str) and isinstance(right, str):
        return (left > right) - (left < right)
    return None


def _chronological(left: Any, right: Any) -> int | None:
    left_ts = parse_timestamp(left)
    right_ts = parse_timestamp(right)
    if left_ts is None or right_ts is None:
        return None
    return (left_ts > right_ts) - (left_ts < right_ts)


def _rule_matches(record: Mapping[str, Any], rule: Rule) -> bool:
    actual = resolve_field(record, rule.field)
    if actual is None:
        return False

    operator = rule.operator
    expected = rule.value

    if operator == "equals":
        return _equals(actual, expected)
    if operator == "not_equals":
        return not _equals(actual, expected)

    if operator in {"greater_than", "less_than"}:
        order = _compare(actual, expected)
        if order is None:
            return False
        return order > 0 if operator == "greater_than" else order < 0

    if operator in {"contains", "not_contains", "starts_with", "ends_with"}:
        left_text = text_form(actual)
        right_text = text_form(expected)
        if operator == "contains":
            return right_text in left_text
        if operator == "not_contains":
            return right_text not in left_text
        if operator == "starts_with":
            return left_text.startswith(right_text)
        return left_text.endswith(right_text)

    if operator in {"is_before", "is_after"}:
        order = _chronological(actual, expected)
        if order is None:
            return False
        return order < 0 if operator == "is_before" else order > 0

    if operator == "is_between":
        if not isinstance(expected, (list, tuple)) or len(expected) != 2:
            return False
        lower, upper = expected
        above = _compare(actual, lower)
        below = _compare(actual, upper)
        return above is not None and below is not None and above > 0 and below < 0

    return False


def matches(
    customer: Customer | Mapping[str, Any],
    node: Rule | RuleGroup,
    *,
    empty_group_matches: bool | None = None,
) -> bool:
    """Evaluate ``node`` against one customer.

    An empty group matches unless ``empty_group_matches`` (or the
    ``EMPTY_RULE_GROUP_MATCHES`` setting when not given) is false.
    """
    record = _as_record(customer)
    if empty_group_matches is None:
        empty_group_matches = settings.empty_rule_group_matches
    return _node_matches(record, node, empty_group_matches)


def _node_matches(record: Mapping[str, Any], node: Rule | RuleGroup, empty_group_matches: bool) -> bool:
    if isinstance(node, Rule):
        return _rule_matches(record, node)

    if not node.rules:
        return empty_group_matches
    results = (_node_matches(record, child, empty_group_matches) for child in node.rules)
    if node.logical_operator == "AND":
        return all(results)
    return any(results)


def audience_of(rules: RuleGroup, customers: Iterable[Customer]) -> list[Customer]:
    return [customer for customer in customers if matches(customer, rules)]


async def load_audience(db: AsyncSession, rules: RuleGroup) -> list[Customer]:
    customers = (await db.execute(select(Customer).order_by(Customer.id.asc()))).scalars().all()
    audience: list[Customer] = []
    for index, customer in enumerate(customers, start=1):
        if matches(customer, rules):
            audience.append(customer)
        if index % settings.audience_eval_yield_every == 0:
            await asyncio.sleep(0)
    return audience


async def count_audience(db: AsyncSession, rules: RuleGroup) -> int:
    return len(await load_audience(db, rules))


def personalize_message(template: str, customer: Customer | Mapping[str, Any]) -> str:
    record = _as_record(customer)

    def _replace(match: re.Match[str]) -> str:
        resolved = resolve_field(record, match.group(1))
        if resolved is None:
            return match.group(0)
        return text_form(resolved)

    return _PLACEHOLDER_RE.sub(_replace, template)
