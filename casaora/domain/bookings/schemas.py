"""Booking domain schemas - Pydantic models for validation"""

from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...config import DEFAULT_CURRENCY
from ...shared.validators import normalize_scope, validate_country_code, validate_currency_code
from ..pricing.schemas import AddonItem

BOOKING_TYPES = ("one_off", "recurring", "direct_hire")
CANCEL_ACTORS = ("customer", "professional", "admin")


class BookingCreate(BaseModel):
    """Schema for creating a booking"""

    customer_id: str = Field(min_length=1)
    professional_id: str = Field(min_length=1)
    service_category: Optional[str] = None
    service_name: Optional[str] = None
    duration_minutes: int = Field(gt=0)
    hourly_rate: int = Field(gt=0)
    address: Optional[str] = None
    city: Optional[str] = None
    country: str
    currency: str = DEFAULT_CURRENCY
    scheduled_start: datetime
    addons: list[AddonItem] = Field(default_factory=list)
    booking_type: str = "one_off"
    redeem_credit: bool = False
    credit_amount: Optional[int] = Field(default=None, gt=0)  # None = as much as applies
    exact_redemption: bool = False

    # Set by the recurring plan scheduler only
    plan_id: Optional[int] = None
    occurrence_date: Optional[date] = None
    discount_percentage: float = Field(default=0, ge=0, lt=100)

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        return validate_country_code(v)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return validate_currency_code(v)

    @field_validator("service_category", "city")
    @classmethod
    def validate_scope(cls, v: Optional[str]) -> Optional[str]:
        return normalize_scope(v)

    @field_validator("scheduled_start")
    @classmethod
    def validate_scheduled_start(cls, v: datetime) -> datetime:
        # Stored as naive UTC
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @field_validator("booking_type")
    @classmethod
    def validate_booking_type(cls, v: str) -> str:
        if v not in BOOKING_TYPES:
            raise ValueError(f"booking_type must be one of {', '.join(BOOKING_TYPES)}")
        return v


class BookingRead(BaseModel):
    """Schema for booking responses"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    public_id: str
    customer_id: str
    professional_id: str
    plan_id: Optional[int] = None
    occurrence_date: Optional[date] = None
    booking_type: str
    service_category: Optional[str] = None
    service_name: Optional[str] = None
    duration_minutes: int
    hourly_rate: int
    city: Optional[str] = None
    country: str
    scheduled_start: datetime
    scheduled_end: datetime
    status: str
    amount_base: int
    amount_commission: int
    amount_addons: int
    amount_deposit: Optional[int] = None
    amount_estimated: int
    amount_authorized: Optional[int] = None
    amount_captured: Optional[int] = None
    amount_final: Optional[int] = None
    late_cancel_fee: Optional[int] = None
    currency: str
    credit_applied: int
    payment_intent_id: Optional[str] = None
    pricing_rule_id: Optional[int] = None
    commission_rate: float
    late_cancel_hours: int
    late_cancel_fee_percentage: float
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    decline_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class PaymentRequest(BaseModel):
    processor_customer_id: Optional[str] = None


class PaymentRequestResponse(BaseModel):
    booking_id: int
    payment_intent_id: str
    amount: int
    status: str


class AuthorizeRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)


class CaptureRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)  # None = full authorized amount


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class DeclineRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)
