from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from billcycle.models.subscription import SubscriptionStatus


class SubscriptionCreate(BaseModel):
    customer_id: UUID
    plan_id: UUID
    start_date: date
    end_date: date | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _validate_dates(self) -> "SubscriptionCreate":
        if self.end_date is not None and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_number: str | None
    customer_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    start_date: date | None
    next_billing_date: date | None
    end_date: date | None
    cancelled_at: date | None
    suspension_reason: str | None
    parent_subscription_id: UUID | None
    renewal_type: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class SubscriptionAction(BaseModel):
    reason: str | None = Field(default=None, max_length=255)
    actor: str | None = Field(default=None, max_length=120)
    effective_date: date | None = None


class SubscriptionRenew(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    actor: str | None = Field(default=None, max_length=120)


class SubscriptionEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    action: str
    from_status: SubscriptionStatus | None
    to_status: SubscriptionStatus | None
    description: str | None
    actor: str | None
    created_at: datetime
