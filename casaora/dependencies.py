"""
Service wiring
One event bus per request or job; the plan scheduler listens for completed
bookings and the notification dispatcher listens for everything.
"""

import logging
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from . import events as ev
from .database import get_db
from .domain.bookings.payments import PaymentProcessor, StripePaymentProcessor
from .domain.bookings.state_machine import BookingStateMachine
from .domain.credits.ledger import CreditLedger
from .domain.plans.scheduler import RecurringPlanScheduler
from .events import EventBus
from .services.notification_service import notification_dispatcher

logger = logging.getLogger(__name__)

_payment_processor: Optional[PaymentProcessor] = None


def get_payment_processor() -> PaymentProcessor:
    """Get or create the process-wide processor client"""
    global _payment_processor
    if _payment_processor is None:
        _payment_processor = StripePaymentProcessor()
    return _payment_processor


def build_scheduler(db: Session, processor: PaymentProcessor, **engine_options) -> RecurringPlanScheduler:
    """Wire a booking engine and plan scheduler sharing one session and event bus"""
    events = engine_options.pop("events", None) or EventBus()
    engine = BookingStateMachine(db, processor, events=events, **engine_options)
    scheduler = RecurringPlanScheduler(db, engine, events)
    events.subscribe(ev.BOOKING_COMPLETED, scheduler.handle_booking_completed)
    events.subscribe(ev.ALL_EVENTS, notification_dispatcher.dispatch)
    return scheduler


def get_plan_scheduler(
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> RecurringPlanScheduler:
    """Dependency injection for RecurringPlanScheduler"""
    return build_scheduler(db, processor)


def get_booking_engine(
    scheduler: RecurringPlanScheduler = Depends(get_plan_scheduler),
) -> BookingStateMachine:
    """Dependency injection for BookingStateMachine"""
    return scheduler.bookings


def get_credit_ledger(db: Session = Depends(get_db)) -> CreditLedger:
    """Dependency injection for CreditLedger"""
    events = EventBus()
    events.subscribe(ev.ALL_EVENTS, notification_dispatcher.dispatch)
    return CreditLedger(db, events)
