"""Recurring plan schemas - Pydantic models for validation"""

from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ...config import DEFAULT_CURRENCY
from ...shared.validators import normalize_scope, validate_country_code, validate_currency_code

PLAN_FREQUENCIES = ("weekly", "biweekly", "monthly")


class PlanCreate(BaseModel):
    """Schema for creating a recurring plan; the fields are the booking template"""

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
    frequency: str
    anchor_time: time  # local time in the platform timezone
    start_date: date
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

    @field_validator("frequency")
    @classmethod
    def validate_frequency(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in PLAN_FREQUENCIES:
            raise ValueError(f"frequency must be one of {', '.join(PLAN_FREQUENCIES)}")
        return v


class PauseRequest(BaseModel):
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def validate_window(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class PlanRead(BaseModel):
    """Schema for plan responses"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: str
    professional_id: str
    service_category: Optional[str] = None
    service_name: Optional[str] = None
    duration_minutes: int
    hourly_rate: int
    city: Optional[str] = None
    country: str
    currency: str
    frequency: str
    anchor_time: time
    anchor_day_of_month: Optional[int] = None
    status: str
    pause_start_date: Optional[date] = None
    pause_end_date: Optional[date] = None
    next_booking_date: date
    discount_percentage: float
    total_bookings_completed: int
    last_fired_at: Optional[datetime] = None
    last_firing_error: Optional[str] = None
    created_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class PlanRunSummary(BaseModel):
    resumed: int = 0
    fired: int = 0
    failed: int = 0
