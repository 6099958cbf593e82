# dotformer/schemas.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ImageFormat = Literal["jpg", "jpeg", "png", "webp", "gif", "tiff", "avif"]
FitMode = Literal["cover", "contain", "fill", "inside", "outside"]
OperationType = Literal["upload", "transform", "storage", "api"]


# Transform schemas
class TransformOptions(BaseModel):
    """Closed set of transformation options.

    Every field defaults to None so an absent option never collides with an
    explicitly supplied default when deriving cache keys.
    """

    model_config = ConfigDict(extra="forbid")

    width: Optional[int] = Field(default=None, ge=1, le=10000)
    height: Optional[int] = Field(default=None, ge=1, le=10000)
    format: Optional[ImageFormat] = None
    quality: Optional[int] = Field(default=None, ge=1, le=100)
    fit: Optional[FitMode] = None
    position: Optional[str] = None
    background: Optional[str] = None
    rotate: Optional[int] = Field(default=None, ge=-360, le=360)
    flip: Optional[bool] = None
    flop: Optional[bool] = None
    grayscale: Optional[bool] = None

    @field_validator("background")
    @classmethod
    def validate_background(cls, value):
        if value is not None and not value.startswith("#"):
            raise ValueError("background must be a hex colour such as #ffffff")
        return value

    def as_options(self) -> dict[str, Any]:
        """Options that were actually supplied, without None values."""
        return self.model_dump(exclude_none=True)


class TransformRequest(BaseModel):
    source_id: str = Field(min_length=1, max_length=1024)
    options: TransformOptions = Field(default_factory=TransformOptions)


class TransformResponse(BaseModel):
    source_id: str
    key: str
    url: str
    cached: bool


class UploadResponse(BaseModel):
    source_id: str
    filename: str
    size: int
    url: str


# Billing schemas
class PricingTierSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    operation_type: str
    tier: int
    unit_price: Decimal
    unit_type: str
    free_quota: int
    min_quantity: int
    max_quantity: Optional[int] = None


class PricingPlanSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    is_active: bool
    pricing_tiers: list[PricingTierSchema]


class BillSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    amount: Decimal
    currency: str
    status: str
    start_period: datetime
    end_period: datetime
    created_at: datetime
    paid_at: Optional[datetime] = None


class BillingHistoryResponse(BaseModel):
    bills: list[BillSchema]
    total: int
    limit: int
    offset: int


class OperationUsage(BaseModel):
    total: int
    unit: str


class CurrentUsageResponse(BaseModel):
    usage_by_operation: dict[str, OperationUsage]
    estimated_cost: Decimal
    currency: str
    period_start: datetime
    period_end: datetime


class SubscribeRequest(BaseModel):
    plan_id: str


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    pricing_plan_id: str
    status: str


class PaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(min_length=1)


class PaymentMethodResponse(BaseModel):
    account_id: str
    has_payment_method: bool


class BillingRunRequest(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class BillingRunResponse(BaseModel):
    bills: list[BillSchema]
    start_date: datetime
    end_date: datetime


# Health schemas
class HealthResponse(BaseModel):
    status: str
    version: str


class ErrorResponse(BaseModel):
    error: str
    code: str
