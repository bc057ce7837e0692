from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.schemas.common import PaginationMeta


CampaignStatus = Literal["draft", "sending", "sent", "failed"]
LogStatus = Literal["pending", "sending", "delivered", "failed"]
OutcomeStatus = Literal["delivered", "failed"]


class CampaignCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    segment_id: int
    message: str = Field(min_length=1, max_length=4000)

    @field_validator("name", "message")
    @classmethod
    def validate_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("value cannot be empty")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Win-back October",
                "segment_id": 1,
                "message": "Hi {{customer.first_name}}, here is 10% off your next order.",
            }
        }
    )


class CampaignOut(BaseModel):
    id: int
    name: str
    segment_id: int
    message: str
    created_by_id: int
    status: CampaignStatus
    audience_size: int
    sent_count: int
    failed_count: int
    failure_reason: str | None = None
    sent_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CampaignListOut(BaseModel):
    items: list[CampaignOut]
    pagination: PaginationMeta
    status: CampaignStatus | None = None


class CampaignSendOut(BaseModel):
    message: str
    campaign: CampaignOut


class CommunicationLogOut(BaseModel):
    id: int
    campaign_id: int
    customer_id: int
    message: str
    status: LogStatus
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    failure_reason: str | None = None
    provider_message_id: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CommunicationLogListOut(BaseModel):
    items: list[CommunicationLogOut]
    pagination: PaginationMeta
    status: LogStatus | None = None


class DeliveryReceiptIn(BaseModel):
    log_id: int
    status: OutcomeStatus
    delivered_at: datetime | None = None
    failure_reason: str | None = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def validate_detail(self) -> "DeliveryReceiptIn":
        if self.status == "delivered" and self.failure_reason:
            raise ValueError("failure_reason is only allowed for failed receipts")
        return self


class DeliveryReceiptBatchIn(BaseModel):
    receipts: list[DeliveryReceiptIn] = Field(min_length=1, max_length=500)


class MessageSuggestionIn(BaseModel):
    objective: str = Field(min_length=1, max_length=1000)
    segment_info: dict[str, Any] | None = None

    @field_validator("objective")
    @classmethod
    def validate_objective(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("objective cannot be empty")
        return cleaned


class MessageSuggestionOut(BaseModel):
    messages: list[str]
    fallback_used: bool


class CampaignSummaryIn(BaseModel):
    campaign_id: int


class CampaignSummaryOut(BaseModel):
    campaign_id: int
    summary: str
    fallback_used: bool
