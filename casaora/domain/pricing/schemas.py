"""Pricing domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ...shared.validators import normalize_scope, validate_country_code, validate_fraction

MIN_COMMISSION_RATE = 0.10
MAX_COMMISSION_RATE = 0.30


class PricingRuleCreate(BaseModel):
    """Schema for creating a pricing rule (operator only)"""

    name: Optional[str] = None
    service_category: Optional[str] = None
    city: Optional[str] = None
    country: str
    commission_rate: float
    background_check_fee: int = Field(default=0, ge=0)
    min_price: Optional[int] = Field(default=None, ge=0)
    max_price: Optional[int] = Field(default=None, ge=0)
    deposit_percentage: Optional[float] = None
    late_cancel_hours: int = Field(default=24, ge=0)
    late_cancel_fee_percentage: float = 0.5
    effective_from: date
    effective_until: Optional[date] = None

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        return validate_country_code(v)

    @field_validator("service_category", "city")
    @classmethod
    def validate_scope(cls, v: Optional[str]) -> Optional[str]:
        return normalize_scope(v)

    @field_validator("commission_rate")
    @classmethod
    def validate_commission(cls, v: float) -> float:
        if v < MIN_COMMISSION_RATE or v > MAX_COMMISSION_RATE:
            raise ValueError("commission_rate must be between 0.10 and 0.30")
        return v

    @field_validator("deposit_percentage")
    @classmethod
    def validate_deposit(cls, v: Optional[float]) -> Optional[float]:
        return validate_fraction(v, "deposit_percentage")

    @field_validator("late_cancel_fee_percentage")
    @classmethod
    def validate_late_fee(cls, v: float) -> float:
        return validate_fraction(v, "late_cancel_fee_percentage")

    @model_validator(mode="after")
    def validate_ranges(self):
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise ValueError("min_price must not exceed max_price")
        if self.effective_until is not None and self.effective_until < self.effective_from:
            raise ValueError("effective_until must not be before effective_from")
        return self


class PricingRuleRead(BaseModel):
    """Schema for pricing rule responses"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: Optional[str] = None
    service_category: Optional[str] = None
    city: Optional[str] = None
    country: str
    commission_rate: float
    background_check_fee: int
    min_price: Optional[int] = None
    max_price: Optional[int] = None
    deposit_percentage: Optional[float] = None
    late_cancel_hours: int
    late_cancel_fee_percentage: float
    effective_from: date
    effective_until: Optional[date] = None
    is_active: bool
    created_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None


class ResolvedTerms(BaseModel):
    """Immutable snapshot of the terms a booking is priced with"""

    model_config = ConfigDict(frozen=True)

    rule_id: Optional[int] = None  # None = platform default
    service_category: Optional[str] = None
    city: Optional[str] = None
    country: str
    commission_rate: float
    background_check_fee: int = 0
    min_price: Optional[int] = None
    max_price: Optional[int] = None
    deposit_percentage: Optional[float] = None
    late_cancel_hours: int
    late_cancel_fee_percentage: float
    effective_from: Optional[date] = None
    effective_until: Optional[date] = None
    created_at: Optional[datetime] = None

    @property
    def is_default(self) -> bool:
        return self.rule_id is None


class AddonItem(BaseModel):
    name: str
    amount: int = Field(ge=0)


class PriceQuote(BaseModel):
    """Amounts derived from resolved terms"""

    model_config = ConfigDict(frozen=True)

    base_amount: int
    discount_amount: int = 0
    commission: int
    addons_total: int = 0
    deposit_amount: Optional[int] = None
    amount_estimated: int
    terms: ResolvedTerms


class QuoteRequest(BaseModel):
    """Schema for a price preview"""

    country: str
    city: Optional[str] = None
    service_category: Optional[str] = None
    hourly_rate: int = Field(gt=0)
    duration_minutes: int = Field(gt=0)
    addons: list[AddonItem] = Field(default_factory=list)
    as_of: Optional[date] = None

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        return validate_country_code(v)
