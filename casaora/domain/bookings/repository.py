"""Booking repository - Database operations for bookings

Status changes go through transition(): a single UPDATE guarded on the
expected current status, so two racing transitions cannot both apply.
"""

from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...models import Booking, BookingStatus
from ...shared.money import utcnow


class BookingRepository:
    """Repository for booking database operations"""

    @staticmethod
    def get_booking(db: Session, booking_id: int) -> Optional[Booking]:
        """Get booking by ID, always reading the current row"""
        return db.query(Booking).populate_existing().filter(Booking.id == booking_id).first()

    @staticmethod
    def get_by_public_id(db: Session, public_id: str) -> Optional[Booking]:
        return db.query(Booking).populate_existing().filter(Booking.public_id == public_id).first()

    @staticmethod
    def get_by_payment_intent(db: Session, payment_intent_id: str) -> Optional[Booking]:
        return (
            db.query(Booking)
            .populate_existing()
            .filter(Booking.payment_intent_id == payment_intent_id)
            .first()
        )

    @staticmethod
    def get_plan_occurrence(db: Session, plan_id: int, occurrence_date: date) -> Optional[Booking]:
        return (
            db.query(Booking)
            .filter(Booking.plan_id == plan_id, Booking.occurrence_date == occurrence_date)
            .first()
        )

    @staticmethod
    def list_bookings(
        db: Session,
        customer_id: Optional[str] = None,
        professional_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[Booking]:
        query = db.query(Booking)
        if customer_id:
            query = query.filter(Booking.customer_id == customer_id)
        if professional_id:
            query = query.filter(Booking.professional_id == professional_id)
        if status:
            query = query.filter(Booking.status == status)
        return query.order_by(Booking.scheduled_start.desc()).limit(limit).all()

    @staticmethod
    def list_awaiting_capture(db: Session, now: datetime, limit: int = 200) -> list[Booking]:
        """Bookings with an intent that may have been captured without us recording it"""
        return (
            db.query(Booking)
            .filter(
                Booking.status.in_((BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS)),
                Booking.payment_intent_id.isnot(None),
                Booking.scheduled_end <= now,
            )
            .order_by(Booking.scheduled_end)
            .limit(limit)
            .all()
        )

    @staticmethod
    def create_booking(db: Session, **data) -> Booking:
        """Stage a new booking; the caller owns the commit"""
        booking = Booking(**data)
        db.add(booking)
        db.flush()
        return booking

    @staticmethod
    def transition(db: Session, booking_id: int, expected: Iterable[str], **values) -> bool:
        """
        Compare-and-set: apply values only while status is one of expected.

        Returns:
            True if this call won the transition
        """
        values["updated_at"] = utcnow()
        updated = (
            db.query(Booking)
            .filter(Booking.id == booking_id, Booking.status.in_(tuple(expected)))
            .update(values, synchronize_session=False)
        )
        return updated == 1

    @staticmethod
    def record_payment_error(db: Session, booking_id: int, message: str, **values) -> None:
        values.update(last_payment_error=message, updated_at=utcnow())
        db.query(Booking).filter(Booking.id == booking_id).update(values, synchronize_session=False)
        db.commit()
