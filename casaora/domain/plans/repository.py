"""Recurring plan repository - Database operations for plans"""

from datetime import date
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...models import PlanStatus, RecurringPlan
from ...shared.money import utcnow


class PlanRepository:
    """Repository for recurring plan database operations"""

    @staticmethod
    def get_plan(db: Session, plan_id: int) -> Optional[RecurringPlan]:
        return db.query(RecurringPlan).populate_existing().filter(RecurringPlan.id == plan_id).first()

    @staticmethod
    def list_plans(
        db: Session, customer_id: Optional[str] = None, professional_id: Optional[str] = None
    ) -> list[RecurringPlan]:
        query = db.query(RecurringPlan)
        if customer_id:
            query = query.filter(RecurringPlan.customer_id == customer_id)
        if professional_id:
            query = query.filter(RecurringPlan.professional_id == professional_id)
        return query.order_by(RecurringPlan.created_at.desc()).all()

    @staticmethod
    def list_due(db: Session, horizon: date) -> list[RecurringPlan]:
        """Active plans whose next occurrence falls on or before horizon"""
        return (
            db.query(RecurringPlan)
            .filter(
                RecurringPlan.status == PlanStatus.ACTIVE,
                RecurringPlan.next_booking_date <= horizon,
            )
            .order_by(RecurringPlan.next_booking_date, RecurringPlan.id)
            .all()
        )

    @staticmethod
    def list_expired_pauses(db: Session, today: date) -> list[RecurringPlan]:
        return (
            db.query(RecurringPlan)
            .filter(
                RecurringPlan.status == PlanStatus.PAUSED,
                RecurringPlan.pause_end_date < today,
            )
            .all()
        )

    @staticmethod
    def create_plan(db: Session, **data) -> RecurringPlan:
        plan = RecurringPlan(**data)
        db.add(plan)
        db.commit()
        db.refresh(plan)
        return plan

    @staticmethod
    def transition(db: Session, plan_id: int, expected: Iterable[str], **values) -> bool:
        """Compare-and-set on plan status"""
        values["updated_at"] = utcnow()
        updated = (
            db.query(RecurringPlan)
            .filter(RecurringPlan.id == plan_id, RecurringPlan.status.in_(tuple(expected)))
            .update(values, synchronize_session=False)
        )
        return updated == 1

    @staticmethod
    def advance_next_date(db: Session, plan_id: int, current: date, next_date: date) -> bool:
        """Move next_booking_date forward only if no other pass already did"""
        now = utcnow()
        updated = (
            db.query(RecurringPlan)
            .filter(
                RecurringPlan.id == plan_id,
                RecurringPlan.status == PlanStatus.ACTIVE,
                RecurringPlan.next_booking_date == current,
            )
            .update(
                {
                    RecurringPlan.next_booking_date: next_date,
                    RecurringPlan.last_fired_at: now,
                    RecurringPlan.last_firing_error: None,
                    RecurringPlan.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    @staticmethod
    def increment_completed(db: Session, plan_id: int) -> None:
        db.query(RecurringPlan).filter(RecurringPlan.id == plan_id).update(
            {
                RecurringPlan.total_bookings_completed: RecurringPlan.total_bookings_completed + 1,
                RecurringPlan.updated_at: utcnow(),
            },
            synchronize_session=False,
        )

    @staticmethod
    def record_firing_error(db: Session, plan_id: int, message: str) -> None:
        db.query(RecurringPlan).filter(RecurringPlan.id == plan_id).update(
            {RecurringPlan.last_firing_error: message, RecurringPlan.updated_at: utcnow()},
            synchronize_session=False,
        )
