"""Credit domain schemas - Pydantic models for validation"""

from pydantic import BaseModel


class CreditInfo(BaseModel):
    """Read model for a (customer, professional) trial credit balance"""

    customer_id: str
    professional_id: str
    has_credit: bool
    credit_available: int
    credit_earned_total: int
    credit_consumed_total: int
    bookings_completed: int
    bookings_completed_display: int  # "x/3" display, capped
    max_credit: int
    percentage_earned: float  # 0-100 of max_credit


class CustomerCreditsResponse(BaseModel):
    credits: list[CreditInfo]


class DirectHirePreview(BaseModel):
    """Direct hire price after trial credit"""

    professional_id: str
    direct_hire_fee: int
    discount_applied: int
    final_price: int
    credit_remaining: int

