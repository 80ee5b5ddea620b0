"""
Booking State Machine
Owns every booking status change and the side effects tied to them.

    pending -> pending_payment -> authorized -> confirmed -> in_progress -> completed
    cancelled, declined: absorbing

Each transition is a compare-and-set UPDATE on the expected status. The loser
of a race re-reads the row: if the winner produced the same outcome the call
is treated as a successful retry, otherwise it is a state conflict.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ... import events as ev
from ...config import TRIAL_CREDIT_EARN_RATIO
from ...events import EventBus
from ...exceptions import (
    BookingCreationError,
    BookingEngineError,
    InsufficientCredit,
    NotFoundError,
    PaymentProcessorError,
    PaymentStateMismatch,
    StateConflictError,
    ValidationError,
)
from ...models import Booking, BookingStatus
from ...shared.money import apply_rate, utcnow
from ..credits.ledger import CreditLedger
from ..pricing.resolver import PricingRuleResolver, compute_late_cancel_fee
from .availability import AlwaysAvailable, AvailabilityChecker
from .payments import INTENT_CANCELED, INTENT_REQUIRES_CAPTURE, INTENT_SUCCEEDED, PaymentProcessor
from .repository import BookingRepository
from .schemas import CANCEL_ACTORS, BookingCreate

logger = logging.getLogger(__name__)

# Statuses that already hold an authorization for the stored intent
AUTHORIZED_OR_LATER = (
    BookingStatus.AUTHORIZED,
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
)
CAPTURABLE = (BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS)


class BookingStateMachine:
    """Service for the booking lifecycle"""

    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        resolver: Optional[PricingRuleResolver] = None,
        ledger: Optional[CreditLedger] = None,
        events: Optional[EventBus] = None,
        availability: Optional[AvailabilityChecker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.processor = processor
        self.events = events or EventBus()
        self.resolver = resolver or PricingRuleResolver(db)
        self.ledger = ledger or CreditLedger(db, self.events)
        self.availability = availability or AlwaysAvailable()
        self.clock = clock
        self.repo = BookingRepository()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: int) -> Booking:
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise NotFoundError("Booking not found", booking_id=booking_id)
        return booking

    def list_bookings(self, **filters) -> list[Booking]:
        return self.repo.list_bookings(self.db, **filters)

    def _conflict(self, booking: Booking, attempted: str, message: Optional[str] = None):
        logger.warning(
            f"⚠️ Booking {booking.id}: {attempted} rejected from status '{booking.status}' "
            f"(intent={booking.payment_intent_id})"
        )
        return StateConflictError(
            message or f"Cannot {attempted} a booking that is {booking.status}",
            current_status=booking.status,
            attempted=attempted,
            booking_id=booking.id,
        )

    def _publish(self, name: str, booking: Booking, **extra) -> None:
        self.events.publish(
            name,
            booking_id=booking.id,
            public_id=booking.public_id,
            customer_id=booking.customer_id,
            professional_id=booking.professional_id,
            plan_id=booking.plan_id,
            status=booking.status,
            **extra,
        )

    def _reload(self, booking_id: int) -> Booking:
        self.db.rollback()
        return self.get_booking(booking_id)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, data: BookingCreate) -> Booking:
        """Price and persist a new booking, redeeming trial credit when asked"""
        now = self.clock()
        start = data.scheduled_start
        end = start + timedelta(minutes=data.duration_minutes)

        # Plan occurrences are created ahead by the scheduler and may fire on their own day
        if data.plan_id is None and start <= now:
            raise ValidationError("scheduled_start must be in the future", scheduled_start=start.isoformat())

        if not self.availability.is_available(data.professional_id, start, end):
            raise BookingCreationError(
                "Professional is not available for the requested time",
                professional_id=data.professional_id,
                scheduled_start=start.isoformat(),
            )

        terms = self.resolver.resolve(data.service_category, data.city, data.country, now.date())
        addons_total = sum(item.amount for item in data.addons)
        quote = self.resolver.quote(
            terms,
            data.hourly_rate,
            data.duration_minutes,
            addons_total=addons_total,
            discount_percentage=data.discount_percentage,
        )

        try:
            booking = self.repo.create_booking(
                self.db,
                customer_id=data.customer_id,
                professional_id=data.professional_id,
                plan_id=data.plan_id,
                occurrence_date=data.occurrence_date,
                booking_type=data.booking_type,
                service_category=data.service_category,
                service_name=data.service_name,
                duration_minutes=data.duration_minutes,
                hourly_rate=data.hourly_rate,
                address=data.address,
                city=data.city,
                country=data.country,
                scheduled_start=start,
                scheduled_end=end,
                status=BookingStatus.PENDING,
                amount_base=quote.base_amount,
                amount_commission=quote.commission,
                amount_addons=quote.addons_total,
                amount_deposit=quote.deposit_amount,
                amount_estimated=quote.amount_estimated,
                currency=data.currency,
                credit_applied=0,
                pricing_rule_id=terms.rule_id,
                commission_rate=terms.commission_rate,
                deposit_percentage=terms.deposit_percentage,
                late_cancel_hours=terms.late_cancel_hours,
                late_cancel_fee_percentage=terms.late_cancel_fee_percentage,
            )
            if data.redeem_credit:
                requested = min(data.credit_amount or quote.amount_estimated, quote.amount_estimated)
                if requested > 0:
                    booking.credit_applied = self.ledger.consume(
                        data.customer_id,
                        data.professional_id,
                        requested,
                        exact=data.exact_redemption,
                        booking_id=booking.id,
                        commit=False,
                    )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            self.ledger.discard_events()
            logger.warning(f"⚠️ Duplicate booking for plan {data.plan_id} on {data.occurrence_date}: {e}")
            raise StateConflictError(
                "A booking already exists for this plan occurrence",
                attempted="create",
                plan_id=data.plan_id,
            ) from e
        except (InsufficientCredit, StateConflictError):
            self.db.rollback()
            self.ledger.discard_events()
            raise

        self.db.refresh(booking)
        self.ledger.flush_events()
        logger.info(
            f"✅ Booking {booking.id} created: {booking.customer_id} -> {booking.professional_id} "
            f"estimated={booking.amount_estimated} credit={booking.credit_applied} rule={terms.rule_id}"
        )
        self._publish(
            ev.BOOKING_CREATED,
            booking,
            amount_estimated=booking.amount_estimated,
            credit_applied=booking.credit_applied,
        )
        return booking

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    def amount_due(self, booking: Booking) -> int:
        return max(booking.amount_estimated - (booking.credit_applied or 0), 0)

    def request_payment(self, booking_id: int, processor_customer_id: Optional[str] = None) -> Booking:
        """Open a manual-capture intent for the amount due (pending -> pending_payment)"""
        booking = self.get_booking(booking_id)

        if booking.status == BookingStatus.PENDING_PAYMENT and booking.payment_intent_id:
            return booking
        if booking.status != BookingStatus.PENDING:
            raise self._conflict(booking, "request payment for")

        amount = self.amount_due(booking)
        now = self.clock()

        if amount == 0:
            # Fully covered by credit: nothing to hold at the processor
            if not self.repo.transition(
                self.db,
                booking.id,
                (BookingStatus.PENDING,),
                status=BookingStatus.AUTHORIZED,
                amount_authorized=0,
                authorized_at=now,
            ):
                booking = self._reload(booking_id)
                if booking.status == BookingStatus.AUTHORIZED and booking.amount_authorized == 0:
                    return booking
                raise self._conflict(booking, "request payment for")
            self.db.commit()
            booking = self.get_booking(booking_id)
            logger.info(f"💳 Booking {booking.id} fully covered by credit; authorized without intent")
            self._publish(ev.BOOKING_AUTHORIZED, booking, amount_authorized=0)
            return booking

        try:
            intent = self.processor.create_intent(
                amount,
                booking.currency,
                processor_customer_id,
                metadata={"booking_id": booking.public_id},
                idempotency_key=f"intent_{booking.public_id}",
            )
        except PaymentProcessorError as e:
            self.repo.record_payment_error(self.db, booking.id, e.message)
            raise

        if not self.repo.transition(
            self.db,
            booking.id,
            (BookingStatus.PENDING,),
            status=BookingStatus.PENDING_PAYMENT,
            payment_intent_id=intent.id,
            last_payment_error=None,
        ):
            booking = self._reload(booking_id)
            if booking.payment_intent_id == intent.id:
                return booking
            raise self._conflict(booking, "request payment for")

        self.db.commit()
        logger.info(f"💳 Payment intent {intent.id} opened for booking {booking.id} ({amount} {booking.currency})")
        return self.get_booking(booking_id)

    def authorize(self, booking_id: int, payment_intent_id: str) -> Booking:
        """
        Record a processor authorization hold (pending/pending_payment -> authorized).

        A repeat for the intent already recorded is a no-op when the intent
        amount still matches amount_authorized.
        """
        booking = self.get_booking(booking_id)

        if booking.status in AUTHORIZED_OR_LATER and booking.payment_intent_id == payment_intent_id:
            return self._confirm_recorded_authorization(booking)
        if booking.status not in (BookingStatus.PENDING, BookingStatus.PENDING_PAYMENT):
            raise self._conflict(booking, "authorize")
        if booking.payment_intent_id and booking.payment_intent_id != payment_intent_id:
            raise PaymentStateMismatch(
                "Payment does not belong to this booking",
                current_status=booking.status,
                attempted="authorize",
                booking_id=booking.id,
                payment_intent_id=payment_intent_id,
            )

        intent = self.processor.retrieve(payment_intent_id)
        if intent.booking_public_id != booking.public_id or intent.status != INTENT_REQUIRES_CAPTURE:
            logger.warning(
                f"⚠️ Intent {payment_intent_id} (status={intent.status}, "
                f"booking={intent.booking_public_id}) cannot authorize booking {booking.id}"
            )
            raise PaymentStateMismatch(
                "Payment is not authorized for this booking",
                current_status=booking.status,
                attempted="authorize",
                booking_id=booking.id,
                payment_intent_id=payment_intent_id,
                intent_status=intent.status,
            )

        if not self.repo.transition(
            self.db,
            booking.id,
            (BookingStatus.PENDING, BookingStatus.PENDING_PAYMENT),
            status=BookingStatus.AUTHORIZED,
            payment_intent_id=intent.id,
            amount_authorized=intent.amount,
            authorized_at=self.clock(),
            last_payment_error=None,
        ):
            booking = self._reload(booking_id)
            if (
                booking.status in AUTHORIZED_OR_LATER
                and booking.payment_intent_id == intent.id
                and booking.amount_authorized == intent.amount
            ):
                return booking
            raise self._conflict(booking, "authorize")

        self.db.commit()
        booking = self.get_booking(booking_id)
        logger.info(f"✅ Booking {booking.id} authorized for {intent.amount} (intent {intent.id})")
        self._publish(ev.BOOKING_AUTHORIZED, booking, amount_authorized=intent.amount)
        return booking

    def _confirm_recorded_authorization(self, booking: Booking) -> Booking:
        intent = self.processor.retrieve(booking.payment_intent_id)
        if intent.amount == booking.amount_authorized:
            return booking
        logger.warning(
            f"⚠️ Booking {booking.id}: intent {intent.id} amount {intent.amount} "
            f"differs from recorded authorization {booking.amount_authorized}"
        )
        raise PaymentStateMismatch(
            "Payment was already authorized for a different amount",
            current_status=booking.status,
            attempted="authorize",
            booking_id=booking.id,
            payment_intent_id=intent.id,
        )

    # ------------------------------------------------------------------
    # Service delivery
    # ------------------------------------------------------------------

    def _simple_transition(
        self, booking_id: int, attempted: str, source: str, target: str, event: str, **values
    ) -> Booking:
        booking = self.get_booking(booking_id)
        if booking.status == target:
            return booking
        if booking.status != source:
            raise self._conflict(booking, attempted)

        if not self.repo.transition(self.db, booking.id, (source,), status=target, **values):
            booking = self._reload(booking_id)
            if booking.status == target:
                return booking
            raise self._conflict(booking, attempted)

        self.db.commit()
        booking = self.get_booking(booking_id)
        logger.info(f"✅ Booking {booking.id}: {source} -> {target}")
        self._publish(event, booking)
        return booking

    def confirm(self, booking_id: int) -> Booking:
        return self._simple_transition(
            booking_id,
            "confirm",
            BookingStatus.AUTHORIZED,
            BookingStatus.CONFIRMED,
            ev.BOOKING_CONFIRMED,
            confirmed_at=self.clock(),
        )

    def start(self, booking_id: int) -> Booking:
        """Professional check-in"""
        return self._simple_transition(
            booking_id,
            "start",
            BookingStatus.CONFIRMED,
            BookingStatus.IN_PROGRESS,
            ev.BOOKING_STARTED,
            started_at=self.clock(),
        )

    def capture(self, booking_id: int, amount: Optional[int] = None) -> Booking:
        """
        Capture the authorized payment and complete the booking.

        Safe to retry: the processor call carries an idempotency key derived
        from the booking, and a retry that finds the booking already completed
        with the same amount returns it unchanged.

        Raises:
            StateConflictError: wrong status or before scheduled_end
            ValidationError: amount above the authorization
            PaymentProcessorError: processor rejected or timed out (status unchanged)
        """
        booking = self.get_booking(booking_id)
        if amount is not None and amount <= 0:
            raise ValidationError("Capture amount must be positive", amount=amount)

        if booking.status == BookingStatus.COMPLETED:
            if amount is None or booking.amount_captured == amount:
                return booking
            raise self._conflict(booking, "capture", "Booking was already captured for a different amount")
        if booking.status not in CAPTURABLE:
            raise self._conflict(booking, "capture")
        if self.clock() < booking.scheduled_end:
            raise self._conflict(booking, "capture", "Cannot capture before the service has ended")
        if booking.amount_authorized is None:
            raise self._conflict(booking, "capture", "Booking has no payment authorization")

        capture_amount = booking.amount_authorized if amount is None else amount
        if capture_amount > booking.amount_authorized:
            raise ValidationError(
                "Capture amount exceeds the authorized amount",
                amount=capture_amount,
                amount_authorized=booking.amount_authorized,
            )

        if booking.payment_intent_id is None:
            captured = 0
        else:
            try:
                intent = self.processor.capture(
                    booking.payment_intent_id,
                    capture_amount,
                    idempotency_key=f"capture_{booking.public_id}",
                )
            except PaymentProcessorError as e:
                logger.error(
                    f"❌ Capture failed for booking {booking.id} (intent {booking.payment_intent_id}, "
                    f"outcome_unknown={e.outcome_unknown}): {e.message}"
                )
                self.repo.record_payment_error(self.db, booking.id, e.message)
                raise
            if intent.status != INTENT_SUCCEEDED:
                raise PaymentStateMismatch(
                    "Payment capture did not succeed",
                    current_status=booking.status,
                    attempted="capture",
                    booking_id=booking.id,
                    payment_intent_id=intent.id,
                    intent_status=intent.status,
                )
            captured = intent.amount_received or capture_amount

        return self._complete(booking, captured)

    def _complete(self, booking: Booking, captured: int) -> Booking:
        """confirmed/in_progress -> completed, earning credit in the same transaction"""
        now = self.clock()
        won = self.repo.transition(
            self.db,
            booking.id,
            CAPTURABLE,
            status=BookingStatus.COMPLETED,
            amount_captured=captured,
            amount_final=captured,
            completed_at=now,
            last_payment_error=None,
        )
        if not won:
            current = self._reload(booking.id)
            if current.status == BookingStatus.COMPLETED and current.amount_captured == captured:
                logger.info(f"ℹ️ Booking {booking.id} already completed by a concurrent capture")
                return current
            if captured > 0 and current.status != BookingStatus.COMPLETED:
                # Money was taken but the booking moved on; keep the amount for operators
                message = f"Captured {captured} at the processor but booking is {current.status}"
                logger.error(
                    f"🚨 Booking {booking.id}: {message} (intent {booking.payment_intent_id}); "
                    f"needs manual reconciliation"
                )
                self.repo.record_payment_error(self.db, booking.id, message, amount_captured=captured)
                current = self.get_booking(booking.id)
            raise self._conflict(current, "capture")

        earned = 0
        if booking.booking_type != "direct_hire" and captured > 0:
            earned = apply_rate(captured, TRIAL_CREDIT_EARN_RATIO)
            try:
                self.ledger.earn(
                    booking.customer_id,
                    booking.professional_id,
                    earned,
                    booking_id=booking.id,
                    commit=False,
                )
            except BookingEngineError:
                self.db.rollback()
                self.ledger.discard_events()
                raise

        self.db.commit()
        booking = self.get_booking(booking.id)
        logger.info(f"✅ Booking {booking.id} completed: captured={captured} credit_earned={earned}")
        self.ledger.flush_events()
        self._publish(ev.BOOKING_COMPLETED, booking, amount_captured=captured, credit_earned=earned)
        return booking

    def reconcile(self, booking_id: int) -> Booking:
        """Complete a booking whose capture succeeded at the processor but was never recorded"""
        booking = self.get_booking(booking_id)
        if booking.status not in CAPTURABLE or not booking.payment_intent_id:
            return booking

        intent = self.processor.retrieve(booking.payment_intent_id)
        if intent.booking_public_id and intent.booking_public_id != booking.public_id:
            raise PaymentStateMismatch(
                "Payment does not belong to this booking",
                current_status=booking.status,
                attempted="reconcile",
                booking_id=booking.id,
                payment_intent_id=intent.id,
            )
        if intent.status != INTENT_SUCCEEDED:
            logger.debug(f"Booking {booking.id}: intent {intent.id} still {intent.status}")
            return booking

        logger.info(f"🔄 Reconciling booking {booking.id}: intent {intent.id} already captured")
        return self._complete(booking, intent.amount_received or intent.amount)

    def reconcile_pending(self, limit: int = 200) -> int:
        """Worker pass over bookings that may hold an unrecorded capture"""
        completed = 0
        for booking in self.repo.list_awaiting_capture(self.db, self.clock(), limit):
            try:
                if self.reconcile(booking.id).status == BookingStatus.COMPLETED:
                    completed += 1
            except BookingEngineError as e:
                logger.error(f"❌ Reconciliation failed for booking {booking.id}: {e.message}")
        return completed

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, booking_id: int, actor: str, reason: Optional[str] = None) -> Booking:
        """Cancel before service starts; admins may force-cancel an in-progress booking"""
        if actor not in CANCEL_ACTORS:
            raise ValidationError(f"actor must be one of {', '.join(CANCEL_ACTORS)}", actor=actor)

        booking = self.get_booking(booking_id)
        if booking.status == BookingStatus.CANCELLED:
            return booking

        allowed = BookingStatus.CANCELLABLE
        if actor == "admin":
            allowed = allowed + (BookingStatus.IN_PROGRESS,)
        if booking.status not in allowed:
            raise self._conflict(booking, "cancel")

        self._void_intent(booking, "cancel")

        now = self.clock()
        fee = compute_late_cancel_fee(
            booking.amount_base,
            booking.late_cancel_hours,
            booking.late_cancel_fee_percentage,
            booking.scheduled_start,
            now,
        )

        if not self.repo.transition(
            self.db,
            booking.id,
            allowed,
            status=BookingStatus.CANCELLED,
            cancelled_by=actor,
            cancellation_reason=reason,
            cancelled_at=now,
            late_cancel_fee=fee or None,
            amount_final=fee,
        ):
            booking = self._reload(booking_id)
            if booking.status == BookingStatus.CANCELLED:
                return booking
            raise self._conflict(booking, "cancel")

        self._release_credit(booking)
        self.db.commit()
        self.ledger.flush_events()

        booking = self.get_booking(booking_id)
        logger.info(f"🚫 Booking {booking.id} cancelled by {actor} (late_cancel_fee={fee})")
        self._publish(ev.BOOKING_CANCELLED, booking, cancelled_by=actor, late_cancel_fee=fee)
        return booking

    def decline(self, booking_id: int, professional_id: str, reason: Optional[str] = None) -> Booking:
        """Professional turns down a booking that has not been authorized yet"""
        booking = self.get_booking(booking_id)
        if booking.professional_id != professional_id:
            raise ValidationError(
                "Only the assigned professional can decline this booking",
                booking_id=booking.id,
            )
        if booking.status == BookingStatus.DECLINED:
            return booking

        expected = (BookingStatus.PENDING, BookingStatus.PENDING_PAYMENT)
        if booking.status not in expected:
            raise self._conflict(booking, "decline")

        self._void_intent(booking, "decline")

        if not self.repo.transition(
            self.db,
            booking.id,
            expected,
            status=BookingStatus.DECLINED,
            decline_reason=reason,
            cancelled_at=self.clock(),
        ):
            booking = self._reload(booking_id)
            if booking.status == BookingStatus.DECLINED:
                return booking
            raise self._conflict(booking, "decline")

        self._release_credit(booking)
        self.db.commit()
        self.ledger.flush_events()

        booking = self.get_booking(booking_id)
        logger.info(f"🚫 Booking {booking.id} declined by professional {professional_id}")
        self._publish(ev.BOOKING_DECLINED, booking, reason=reason)
        return booking

    def _void_intent(self, booking: Booking, attempted: str) -> None:
        """
        Release the card hold before the booking leaves the payment flow.

        Raises:
            StateConflictError: the processor already captured the payment
            PaymentProcessorError: the hold could not be released (status unchanged)
        """
        if not booking.payment_intent_id:
            return
        try:
            self.processor.cancel(booking.payment_intent_id)
        except PaymentProcessorError as e:
            intent = self.processor.retrieve(booking.payment_intent_id)
            if intent.status == INTENT_CANCELED:
                return
            if intent.status == INTENT_SUCCEEDED:
                raise self._conflict(booking, attempted, "Payment was already captured for this booking") from e
            logger.error(
                f"❌ Could not release hold for booking {booking.id} (intent {booking.payment_intent_id}, "
                f"outcome_unknown={e.outcome_unknown}): {e.message}"
            )
            self.repo.record_payment_error(self.db, booking.id, e.message)
            raise
        logger.info(f"💳 Hold released for booking {booking.id} (intent {booking.payment_intent_id})")

    def _release_credit(self, booking: Booking) -> None:
        if booking.credit_applied:
            self.ledger.release(
                booking.customer_id,
                booking.professional_id,
                booking.credit_applied,
                booking.id,
                commit=False,
            )
