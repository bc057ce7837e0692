"""Segment rule trees.

A tree is a ``RuleGroup`` root whose children are ``Rule`` predicates or nested
``RuleGroup`` nodes. Children are told apart by their ``kind`` tag through a
discriminated union, so a predicate that happens to carry a group-looking key
is rejected instead of being evaluated as a group.
"""

from typing import Annotated, Any, Literal, Union, get_args

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    model_validator,
)

from app.core.config import settings


RuleOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "is_before",
    "is_after",
    "is_between",
]
LogicalOperator = Literal["AND", "OR"]
RuleScalar = Union[StrictBool, StrictInt, Annotated[StrictFloat, Field(allow_inf_nan=False)], StrictStr]
RuleValue = Union[RuleScalar, list[RuleScalar]]

RULE_OPERATORS: tuple[str, ...] = get_args(RuleOperator)


class Rule(BaseModel):
    kind: Literal["rule"] = "rule"
    field: str = Field(min_length=1, max_length=60)
    operator: RuleOperator
    value: RuleValue

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def validate_value_shape(self) -> "Rule":
        if self.operator == "is_between":
            if not isinstance(self.value, list) or len(self.value) != 2:
                raise ValueError("is_between requires a [lower, upper] pair")
        elif isinstance(self.value, list):
            raise ValueError(f"{self.operator} takes a single value")
        return self


class RuleGroup(BaseModel):
    kind: Literal["group"] = "group"
    logical_operator: LogicalOperator = Field(
        default="AND",
        validation_alias=AliasChoices("logical_operator", "logicalOperator"),
    )
    rules: list["RuleNode"] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @model_validator(mode="after")
    def validate_depth(self) -> "RuleGroup":
        if self.depth() > settings.rule_tree_max_depth:
            raise ValueError(f"Rule tree is nested deeper than {settings.rule_tree_max_depth} levels")
        return self

    def depth(self) -> int:
        nested = [child.depth() for child in self.rules if isinstance(child, RuleGroup)]
        return 1 + max(nested, default=0)

    def leaf_count(self) -> int:
        return sum(child.leaf_count() if isinstance(child, RuleGroup) else 1 for child in self.rules)


RuleNode = Annotated[Union[Rule, RuleGroup], Field(discriminator="kind")]

RuleGroup.model_rebuild()


def tag_legacy_tree(raw: Any) -> Any:
    """Add ``kind`` tags to an untagged tree such as ``{"logicalOperator": "AND", "rules": [...]}``.

    Only used where trees come from outside the API contract (the AI text-to-rule
    collaborator). Anything that is not a dict is returned untouched so that
    validation reports it.
    """
    if not isinstance(raw, dict):
        return raw
    children = raw.get("rules")
    kind = raw.get("kind") or ("group" if isinstance(children, list) else "rule")
    if kind == "group":
        return {
            "kind": "group",
            "logical_operator": raw.get("logical_operator", raw.get("logicalOperator", "AND")),
            "rules": [tag_legacy_tree(child) for child in children or []],
        }
    return {
        "kind": "rule",
        "field": raw.get("field"),
        "operator": raw.get("operator"),
        "value": raw.get("value"),
    }


def rule_tree_from_json(value: dict[str, Any] | None) -> RuleGroup:
    return RuleGroup.model_validate(value or {})
