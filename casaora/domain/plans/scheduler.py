"""
Recurring Plan Scheduler
Turns a plan template into one booking per cadence occurrence.

A plan fires when next_booking_date is within PLAN_BOOKING_LEAD_DAYS of today
(platform timezone). A successful firing moves next_booking_date forward by
one cadence unit; a failed firing leaves it where it is so the next pass
retries the same occurrence. At most one booking exists per
(plan, occurrence_date).
"""

import calendar
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ... import events as ev
from ...config import PLAN_BOOKING_LEAD_DAYS, PLAN_RESUME_CUTOFF_HOUR, PLATFORM_TIMEZONE
from ...events import EventBus, LifecycleEvent
from ...exceptions import BookingEngineError, NotFoundError, StateConflictError, ValidationError
from ...models import Booking, PlanStatus, RecurringPlan
from ...shared.money import utcnow
from ..bookings.repository import BookingRepository
from ..bookings.schemas import BookingCreate
from ..bookings.state_machine import BookingStateMachine
from .repository import PlanRepository
from .schemas import PlanCreate, PlanRunSummary

logger = logging.getLogger(__name__)

CADENCE_DAYS = {"weekly": 7, "biweekly": 14}


def add_months(current: date, months: int, anchor_day: Optional[int] = None) -> date:
    """Calendar-month step that returns to anchor_day whenever the month has it"""
    month_index = current.month - 1 + months
    year = current.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor_day or current.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_occurrence(frequency: str, current: date, anchor_day: Optional[int] = None) -> date:
    if frequency == "monthly":
        return add_months(current, 1, anchor_day)
    return current + timedelta(days=CADENCE_DAYS[frequency])


class RecurringPlanScheduler:
    """Service for recurring plan lifecycle and firing"""

    def __init__(
        self,
        db: Session,
        bookings: BookingStateMachine,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tz: str = PLATFORM_TIMEZONE,
        lead_days: int = PLAN_BOOKING_LEAD_DAYS,
    ):
        self.db = db
        self.bookings = bookings
        self.events = events or bookings.events
        self.clock = clock or bookings.clock or utcnow
        self.tz = ZoneInfo(tz)
        self.lead_days = lead_days
        self.repo = PlanRepository()
        self.booking_repo = BookingRepository()

    def local_now(self) -> datetime:
        return self.clock().replace(tzinfo=timezone.utc).astimezone(self.tz)

    def today(self) -> date:
        return self.local_now().date()

    def _publish(self, name: str, plan: RecurringPlan, **extra) -> None:
        self.events.publish(
            name,
            plan_id=plan.id,
            customer_id=plan.customer_id,
            professional_id=plan.professional_id,
            status=plan.status,
            next_booking_date=plan.next_booking_date.isoformat(),
            **extra,
        )

    def _conflict(self, plan: RecurringPlan, attempted: str) -> StateConflictError:
        logger.warning(f"⚠️ Plan {plan.id}: {attempted} rejected from status '{plan.status}'")
        return StateConflictError(
            f"Cannot {attempted} a plan that is {plan.status}",
            current_status=plan.status,
            attempted=attempted,
            plan_id=plan.id,
        )

    # ------------------------------------------------------------------
    # Plan lifecycle
    # ------------------------------------------------------------------

    def get_plan(self, plan_id: int) -> RecurringPlan:
        plan = self.repo.get_plan(self.db, plan_id)
        if not plan:
            raise NotFoundError("Plan not found", plan_id=plan_id)
        return plan

    def list_plans(self, **filters) -> list[RecurringPlan]:
        return self.repo.list_plans(self.db, **filters)

    def create_plan(self, data: PlanCreate) -> RecurringPlan:
        if data.start_date < self.today():
            raise ValidationError("start_date cannot be in the past", start_date=data.start_date.isoformat())

        values = data.model_dump(exclude={"start_date"})
        plan = self.repo.create_plan(
            self.db,
            **values,
            anchor_day_of_month=data.start_date.day if data.frequency == "monthly" else None,
            status=PlanStatus.ACTIVE,
            next_booking_date=data.start_date,
            total_bookings_completed=0,
        )
        logger.info(
            f"✅ Plan {plan.id} created: {plan.frequency} {plan.customer_id} -> {plan.professional_id} "
            f"starting {plan.next_booking_date}"
        )
        self._publish(ev.PLAN_CREATED, plan)
        return plan

    def pause(self, plan_id: int, start_date: date, end_date: date) -> RecurringPlan:
        if end_date <= start_date:
            raise ValidationError("end_date must be after start_date", plan_id=plan_id)

        plan = self.get_plan(plan_id)
        if (
            plan.status == PlanStatus.PAUSED
            and plan.pause_start_date == start_date
            and plan.pause_end_date == end_date
        ):
            return plan
        if plan.status != PlanStatus.ACTIVE:
            raise self._conflict(plan, "pause")

        if not self.repo.transition(
            self.db,
            plan.id,
            (PlanStatus.ACTIVE,),
            status=PlanStatus.PAUSED,
            pause_start_date=start_date,
            pause_end_date=end_date,
        ):
            self.db.rollback()
            raise self._conflict(self.get_plan(plan_id), "pause")

        self.db.commit()
        plan = self.get_plan(plan_id)
        logger.info(f"⏸️ Plan {plan.id} paused {start_date} - {end_date}")
        self._publish(ev.PLAN_PAUSED, plan, pause_start_date=start_date.isoformat(), pause_end_date=end_date.isoformat())
        return plan

    def resume(self, plan_id: int) -> RecurringPlan:
        """Reactivate; the next occurrence is today before the cutoff hour, otherwise tomorrow"""
        plan = self.get_plan(plan_id)
        if plan.status == PlanStatus.ACTIVE:
            return plan
        if plan.status != PlanStatus.PAUSED:
            raise self._conflict(plan, "resume")

        local = self.local_now()
        next_date = local.date() if local.hour < PLAN_RESUME_CUTOFF_HOUR else local.date() + timedelta(days=1)

        if not self.repo.transition(
            self.db,
            plan.id,
            (PlanStatus.PAUSED,),
            status=PlanStatus.ACTIVE,
            pause_start_date=None,
            pause_end_date=None,
            next_booking_date=next_date,
        ):
            self.db.rollback()
            plan = self.get_plan(plan_id)
            if plan.status == PlanStatus.ACTIVE:
                return plan
            raise self._conflict(plan, "resume")

        self.db.commit()
        plan = self.get_plan(plan_id)
        logger.info(f"▶️ Plan {plan.id} resumed; next booking {plan.next_booking_date}")
        self._publish(ev.PLAN_RESUMED, plan)
        return plan

    def cancel(self, plan_id: int) -> RecurringPlan:
        """Terminal; bookings already spawned are left as they are"""
        plan = self.get_plan(plan_id)
        if plan.status == PlanStatus.CANCELLED:
            return plan

        if not self.repo.transition(
            self.db,
            plan.id,
            (PlanStatus.ACTIVE, PlanStatus.PAUSED),
            status=PlanStatus.CANCELLED,
            pause_start_date=None,
            pause_end_date=None,
            cancelled_at=self.clock(),
        ):
            self.db.rollback()
            plan = self.get_plan(plan_id)
            if plan.status == PlanStatus.CANCELLED:
                return plan
            raise self._conflict(plan, "cancel")

        self.db.commit()
        plan = self.get_plan(plan_id)
        logger.info(f"🚫 Plan {plan.id} cancelled")
        self._publish(ev.PLAN_CANCELLED, plan)
        return plan

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def _occurrence_start(self, plan: RecurringPlan, occurrence: date) -> datetime:
        local_start = datetime.combine(occurrence, plan.anchor_time, tzinfo=self.tz)
        return local_start.astimezone(timezone.utc).replace(tzinfo=None)

    def _booking_request(self, plan: RecurringPlan, occurrence: date) -> BookingCreate:
        return BookingCreate(
            customer_id=plan.customer_id,
            professional_id=plan.professional_id,
            service_category=plan.service_category,
            service_name=plan.service_name,
            duration_minutes=plan.duration_minutes,
            hourly_rate=plan.hourly_rate,
            address=plan.address,
            city=plan.city,
            country=plan.country,
            currency=plan.currency,
            scheduled_start=self._occurrence_start(plan, occurrence),
            booking_type="recurring",
            plan_id=plan.id,
            occurrence_date=occurrence,
            discount_percentage=plan.discount_percentage or 0,
        )

    def _record_failure(self, plan: RecurringPlan, occurrence: date, error: BookingEngineError) -> None:
        self.db.rollback()
        self.repo.record_firing_error(self.db, plan.id, error.message)
        self.db.commit()
        logger.error(f"❌ Plan {plan.id} failed to fire for {occurrence}: {error.message}")
        self._publish(ev.PLAN_FIRING_FAILED, plan, occurrence_date=occurrence.isoformat(), error=error.message)

    def fire(self, plan_id: int) -> Optional[Booking]:
        """
        Create the booking for the plan's next occurrence if it is due.

        Returns:
            The occurrence's booking, or None when the plan is not due or firing failed
        """
        plan = self.get_plan(plan_id)
        if plan.status != PlanStatus.ACTIVE:
            return None

        occurrence = plan.next_booking_date
        if occurrence > self.today() + timedelta(days=self.lead_days):
            return None

        booking = self.booking_repo.get_plan_occurrence(self.db, plan.id, occurrence)
        if booking is None:
            try:
                booking = self.bookings.create(self._booking_request(plan, occurrence))
            except StateConflictError as e:
                # Another pass created this occurrence first
                booking = self.booking_repo.get_plan_occurrence(self.db, plan.id, occurrence)
                if booking is None:
                    self._record_failure(plan, occurrence, e)
                    return None
            except BookingEngineError as e:
                self._record_failure(plan, occurrence, e)
                return None

        next_date = next_occurrence(plan.frequency, occurrence, plan.anchor_day_of_month)
        if self.repo.advance_next_date(self.db, plan.id, occurrence, next_date):
            self.db.commit()
            plan = self.get_plan(plan_id)
            logger.info(f"📅 Plan {plan.id} fired booking {booking.id} for {occurrence}; next {next_date}")
            self._publish(ev.PLAN_ADVANCED, plan, booking_id=booking.id, occurrence_date=occurrence.isoformat())
        else:
            self.db.rollback()
        return booking

    def advance_cycle(self, plan_id: int) -> RecurringPlan:
        """Count a completed plan booking and fire the next occurrence if due"""
        plan = self.get_plan(plan_id)
        self.repo.increment_completed(self.db, plan.id)
        self.db.commit()

        plan = self.get_plan(plan_id)
        if plan.status != PlanStatus.ACTIVE:
            logger.info(f"ℹ️ Plan {plan.id} is {plan.status}; cycle counted, nothing fired")
            return plan

        self.fire(plan.id)
        return self.get_plan(plan_id)

    def handle_booking_completed(self, event: LifecycleEvent) -> None:
        plan_id = event.payload.get("plan_id")
        if plan_id:
            self.advance_cycle(plan_id)

    def run_due_plans(self) -> PlanRunSummary:
        """Scheduler pass: resume plans whose pause ended, then fire every due plan"""
        summary = PlanRunSummary()
        today = self.today()

        for plan in self.repo.list_expired_pauses(self.db, today):
            try:
                self.resume(plan.id)
                summary.resumed += 1
            except BookingEngineError as e:
                logger.error(f"❌ Could not auto-resume plan {plan.id}: {e.message}")

        for plan in self.repo.list_due(self.db, today + timedelta(days=self.lead_days)):
            if self.fire(plan.id) is None:
                summary.failed += 1
            else:
                summary.fired += 1

        logger.info(f"📅 Plan pass: resumed={summary.resumed} fired={summary.fired} failed={summary.failed}")
        return summary
