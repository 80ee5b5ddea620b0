import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .config import DIRECT_HIRE_FEE, TRIAL_CREDIT_CAP_RATIO, TRIAL_CREDIT_DISPLAY_BOOKINGS


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


class BookingStatus:
    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    AUTHORIZED = "authorized"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"

    TERMINAL = (COMPLETED, CANCELLED, DECLINED)
    # States from which a customer/professional may still cancel
    CANCELLABLE = (PENDING, PENDING_PAYMENT, AUTHORIZED, CONFIRMED)


class PlanStatus:
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class PricingRule(Base):
    """
    Operator-managed pricing terms for a (category, city, country) scope.
    Rows are never deleted, only deactivated, so bookings stay auditable.
    """

    __tablename__ = "pricing_rules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=True)
    service_category = Column(String(100), nullable=True, index=True)  # null = any category
    city = Column(String(100), nullable=True)  # null = country-wide
    country = Column(String(2), nullable=False, index=True)  # ISO 3166 alpha-2
    commission_rate = Column(Float, nullable=False)  # 0.10 - 0.30
    background_check_fee = Column(Integer, default=0, nullable=False)
    min_price = Column(Integer, nullable=True)
    max_price = Column(Integer, nullable=True)
    deposit_percentage = Column(Float, nullable=True)  # 0 - 1, null = no deposit
    late_cancel_hours = Column(Integer, default=24, nullable=False)
    late_cancel_fee_percentage = Column(Float, default=0.5, nullable=False)
    effective_from = Column(Date, nullable=False)
    effective_until = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    deactivated_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return (
            f"<PricingRule(id={self.id}, country='{self.country}', city='{self.city}', "
            f"category='{self.service_category}', commission={self.commission_rate})>"
        )


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        # One plan firing yields at most one booking per occurrence
        UniqueConstraint("plan_id", "occurrence_date", name="uq_booking_plan_occurrence"),
    )

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(String(36), unique=True, index=True, default=generate_public_id)
    customer_id = Column(String(255), index=True, nullable=False)
    professional_id = Column(String(255), index=True, nullable=False)
    plan_id = Column(Integer, ForeignKey("recurring_plans.id"), nullable=True, index=True)
    occurrence_date = Column(Date, nullable=True)
    booking_type = Column(String(20), default="one_off", nullable=False)  # one_off, recurring, direct_hire

    # Service metadata
    service_category = Column(String(100), nullable=True)
    service_name = Column(String(255), nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    hourly_rate = Column(Integer, nullable=False)
    address = Column(Text, nullable=True)
    city = Column(String(100), nullable=True)
    country = Column(String(2), nullable=False)

    scheduled_start = Column(DateTime, nullable=False)
    scheduled_end = Column(DateTime, nullable=False)
    status = Column(String(30), default=BookingStatus.PENDING, nullable=False, index=True)

    # Amounts (minor currency units)
    amount_base = Column(Integer, default=0, nullable=False)
    amount_commission = Column(Integer, default=0, nullable=False)
    amount_addons = Column(Integer, default=0, nullable=False)
    amount_deposit = Column(Integer, nullable=True)
    amount_estimated = Column(Integer, default=0, nullable=False)
    amount_authorized = Column(Integer, nullable=True)
    amount_captured = Column(Integer, nullable=True)
    amount_final = Column(Integer, nullable=True)
    late_cancel_fee = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=False)
    credit_applied = Column(Integer, default=0, nullable=False)

    # Opaque reference to the payment processor
    payment_intent_id = Column(String(255), nullable=True, index=True)
    last_payment_error = Column(Text, nullable=True)

    # Pricing snapshot taken at creation; later rule edits never change it
    pricing_rule_id = Column(Integer, ForeignKey("pricing_rules.id"), nullable=True)
    commission_rate = Column(Float, nullable=False)
    deposit_percentage = Column(Float, nullable=True)
    late_cancel_hours = Column(Integer, nullable=False)
    late_cancel_fee_percentage = Column(Float, nullable=False)

    cancelled_by = Column(String(20), nullable=True)  # customer, professional, admin
    cancellation_reason = Column(Text, nullable=True)
    decline_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    authorized_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    plan = relationship("RecurringPlan", back_populates="bookings")
    pricing_rule = relationship("PricingRule")


class TrialCreditAccount(Base):
    """Trial credit toward direct hire, scoped per (customer, professional) pair"""

    __tablename__ = "trial_credit_accounts"
    __table_args__ = (
        UniqueConstraint("customer_id", "professional_id", name="uq_trial_credit_pair"),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String(255), index=True, nullable=False)
    professional_id = Column(String(255), index=True, nullable=False)
    credit_earned_total = Column(Integer, default=0, nullable=False)
    credit_consumed_total = Column(Integer, default=0, nullable=False)
    # Uncapped bookkeeping; only the "x/3" display caps
    bookings_completed_count = Column(Integer, default=0, nullable=False)
    last_earned_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    transactions = relationship("TrialCreditTransaction", back_populates="account")

    @staticmethod
    def credit_cap() -> int:
        """Cap tracks the current platform direct-hire fee"""
        return round(DIRECT_HIRE_FEE * TRIAL_CREDIT_CAP_RATIO)

    @property
    def credit_available(self) -> int:
        balance = (self.credit_earned_total or 0) - (self.credit_consumed_total or 0)
        return max(0, min(balance, self.credit_cap()))

    @property
    def bookings_completed_display(self) -> int:
        return min(self.bookings_completed_count or 0, TRIAL_CREDIT_DISPLAY_BOOKINGS)


class TrialCreditTransaction(Base):
    """Append-only journal of earn/consume/release movements"""

    __tablename__ = "trial_credit_transactions"
    __table_args__ = (
        UniqueConstraint("booking_id", "kind", name="uq_trial_credit_booking_kind"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("trial_credit_accounts.id"), nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    kind = Column(String(20), nullable=False)  # earn, consume, release
    amount = Column(Integer, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    account = relationship("TrialCreditAccount", back_populates="transactions")


class RecurringPlan(Base):
    __tablename__ = "recurring_plans"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String(255), index=True, nullable=False)
    professional_id = Column(String(255), index=True, nullable=False)

    # Service template
    service_category = Column(String(100), nullable=True)
    service_name = Column(String(255), nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    hourly_rate = Column(Integer, nullable=False)
    address = Column(Text, nullable=True)
    city = Column(String(100), nullable=True)
    country = Column(String(2), nullable=False)
    currency = Column(String(3), nullable=False)

    frequency = Column(String(20), nullable=False)  # weekly, biweekly, monthly
    anchor_time = Column(Time, nullable=False)  # local time of day in PLATFORM_TIMEZONE
    anchor_day_of_month = Column(Integer, nullable=True)  # monthly plans keep this day

    status = Column(String(20), default=PlanStatus.ACTIVE, nullable=False, index=True)
    pause_start_date = Column(Date, nullable=True)
    pause_end_date = Column(Date, nullable=True)
    next_booking_date = Column(Date, nullable=False, index=True)
    discount_percentage = Column(Float, default=0, nullable=False)  # e.g. 10 = 10% off
    total_bookings_completed = Column(Integer, default=0, nullable=False)
    last_fired_at = Column(DateTime, nullable=True)
    last_firing_error = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    cancelled_at = Column(DateTime, nullable=True)

    bookings = relationship("Booking", back_populates="plan")
