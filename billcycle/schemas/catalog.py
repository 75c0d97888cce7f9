from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from billcycle.models.catalog import BillingPeriod, DiscountType


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    sku: str | None = Field(default=None, max_length=80)
    description: str | None = None
    is_active: bool = True


class ProductRead(ProductCreate):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime
    updated_at: datetime


class PlanLineCreate(BaseModel):
    product_id: UUID
    description: str | None = Field(default=None, max_length=255)
    unit_price: Decimal = Field(ge=0, decimal_places=2)
    quantity: Decimal = Field(default=Decimal("1.000"), gt=0, decimal_places=3)
    position: int | None = Field(default=None, ge=0)


class PlanLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    description: str | None
    unit_price: Decimal
    quantity: Decimal
    position: int


class PlanBase(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    description: str | None = None
    currency: str = Field(default="USD", min_length=3, max_length=3)
    billing_period: BillingPeriod = BillingPeriod.monthly
    calendar_aligned: bool = False
    renewable: bool = True
    pausable: bool = True
    closable: bool = True
    is_active: bool = True


class PlanCreate(PlanBase):
    code: str = Field(min_length=1, max_length=80)
    lines: list[PlanLineCreate] = Field(default_factory=list)


class PlanRevision(BaseModel):
    """Changes to a plan; ``lines`` replaces the whole line set when given."""

    name: str | None = Field(default=None, min_length=1, max_length=160)
    description: str | None = None
    billing_period: BillingPeriod | None = None
    calendar_aligned: bool | None = None
    renewable: bool | None = None
    pausable: bool | None = None
    closable: bool | None = None
    lines: list[PlanLineCreate] | None = None


class PlanRead(PlanBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    version: int
    superseded_by_id: UUID | None
    lines: list[PlanLineRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class DiscountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    discount_type: DiscountType = DiscountType.percent
    value: Decimal = Field(ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    starts_on: date | None = None
    ends_on: date | None = None
    plan_id: UUID | None = None
    product_id: UUID | None = None
    min_quantity: Decimal | None = Field(default=None, gt=0)
    is_active: bool = True

    @model_validator(mode="after")
    def _validate_discount(self) -> "DiscountCreate":
        if self.discount_type == DiscountType.percent and self.value > 100:
            raise ValueError("percent discounts must be between 0 and 100")
        if self.discount_type == DiscountType.fixed and not self.currency:
            raise ValueError("currency is required for fixed discounts")
        if self.starts_on and self.ends_on and self.ends_on < self.starts_on:
            raise ValueError("ends_on must not be before starts_on")
        return self


class DiscountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    discount_type: DiscountType
    value: Decimal
    currency: str | None
    starts_on: date | None
    ends_on: date | None
    plan_id: UUID | None
    product_id: UUID | None
    min_quantity: Decimal | None
    is_active: bool
    created_at: datetime


class TaxRateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    code: str | None = Field(default=None, max_length=40)
    rate: Decimal = Field(ge=0, le=100)
    starts_on: date | None = None
    ends_on: date | None = None
    plan_id: UUID | None = None
    product_id: UUID | None = None
    is_active: bool = True

    @model_validator(mode="after")
    def _validate_window(self) -> "TaxRateCreate":
        if self.starts_on and self.ends_on and self.ends_on < self.starts_on:
            raise ValueError("ends_on must not be before starts_on")
        return self


class TaxRateRead(TaxRateCreate):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime
