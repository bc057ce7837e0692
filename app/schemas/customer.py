from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from app.schemas.common import PaginationMeta


CustomerStatus = Literal["active", "inactive", "new"]


class CustomerCreateIn(BaseModel):
    first_name: str = Field(min_length=1, max_length=120)
    last_name: str = Field(min_length=1, max_length=120)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=40)
    status: CustomerStatus = "active"

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name is required")
        return cleaned

    @field_validator("phone")
    @classmethod
    def normalize_phone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class CustomerUpdateIn(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=120)
    last_name: str | None = Field(default=None, min_length=1, max_length=120)
    phone: str | None = Field(default=None, max_length=40)
    status: CustomerStatus | None = None

    @model_validator(mode="after")
    def validate_has_field(self) -> "CustomerUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        for field_name in ("first_name", "last_name", "status"):
            if field_name in self.model_fields_set and getattr(self, field_name) is None:
                raise ValueError(f"{field_name} cannot be null")
        return self


class CustomerOut(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str
    phone: str | None = None
    status: CustomerStatus
    total_spend: float
    last_seen_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CustomerListOut(BaseModel):
    items: list[CustomerOut]
    pagination: PaginationMeta


class OrderCreateIn(BaseModel):
    customer_id: int
    amount: float = Field(gt=0)
    order_date: datetime | None = None
    status: str = Field(default="completed", min_length=1, max_length=20)
    items: list[dict[str, Any]] | None = None


class OrderOut(BaseModel):
    id: int
    customer_id: int
    order_date: datetime
    amount: float
    status: str
    items: list[dict[str, Any]] | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderListOut(BaseModel):
    items: list[OrderOut]
    pagination: PaginationMeta
