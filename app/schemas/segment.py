from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.common import PaginationMeta
from app.schemas.rules import RuleGroup


class SegmentCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    rules: RuleGroup

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name cannot be empty")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "High spenders",
                "rules": {
                    "kind": "group",
                    "logical_operator": "AND",
                    "rules": [
                        {"kind": "rule", "field": "total_spend", "operator": "greater_than", "value": 1000},
                        {"kind": "rule", "field": "status", "operator": "equals", "value": "active"},
                    ],
                },
            }
        }
    )


class SegmentOut(BaseModel):
    id: int
    name: str
    rules: RuleGroup
    # Snapshot taken at creation; see /segments/{id}/preview for the live count.
    audience_size: int
    created_by_id: int
    created_at: datetime


class SegmentListOut(BaseModel):
    items: list[SegmentOut]
    pagination: PaginationMeta


class SegmentPreviewIn(BaseModel):
    rules: RuleGroup


class SegmentPreviewOut(BaseModel):
    audience_size: int


class SegmentLivePreviewOut(BaseModel):
    segment_id: int
    snapshot_audience_size: int
    live_audience_size: int


class GenerateRulesIn(BaseModel):
    text: str = Field(min_length=1, max_length=2000)
    context: dict[str, Any] | None = None

    @field_validator("text")
    @classmethod
    def validate_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("text cannot be empty")
        return cleaned


class GenerateRulesOut(BaseModel):
    rules: RuleGroup
    audience_size: int
    fallback_used: bool
