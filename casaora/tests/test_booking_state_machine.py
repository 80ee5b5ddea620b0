"""
Tests: booking lifecycle, payment authorization/capture and cancellation.

Run with:
    pytest casaora/tests/test_booking_state_machine.py -v
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from casaora import events as ev
from casaora.domain.bookings.payments import INTENT_CANCELED, INTENT_REQUIRES_CAPTURE
from casaora.domain.bookings.schemas import BookingCreate
from casaora.exceptions import (
    BookingCreationError,
    InsufficientCredit,
    PaymentProcessorError,
    PaymentStateMismatch,
    StateConflictError,
    ValidationError,
)
from casaora.models import Booking, BookingStatus, TrialCreditTransaction


def _request(clock, **overrides) -> BookingCreate:
    values = dict(
        customer_id="cust-1",
        professional_id="pro-1",
        service_category="cleaning",
        service_name="Deep clean",
        duration_minutes=120,
        hourly_rate=50_000,
        city="Bogotá",
        country="CO",
        currency="COP",
        scheduled_start=clock() + timedelta(days=2),
    )
    values.update(overrides)
    return BookingCreate(**values)


def _confirmed(engine, clock, **overrides) -> Booking:
    booking = engine.create(_request(clock, **overrides))
    booking = engine.request_payment(booking.id)
    engine.authorize(booking.id, booking.payment_intent_id)
    return engine.confirm(booking.id)


def _after_service(clock, booking) -> None:
    clock.now = booking.scheduled_end + timedelta(minutes=5)


class TestCreate:
    def test_booking_is_priced_with_default_terms(self, engine, clock, events):
        booking = engine.create(_request(clock))
        assert booking.status == BookingStatus.PENDING
        assert booking.amount_base == 100_000
        assert booking.amount_commission == 18_000
        assert booking.amount_estimated == 118_000
        assert booking.pricing_rule_id is None
        assert booking.commission_rate == 0.18
        assert booking.scheduled_end == booking.scheduled_start + timedelta(minutes=120)
        assert [e.name for e in events.published] == [ev.BOOKING_CREATED]

    def test_addons_are_added_to_estimate(self, engine, clock):
        booking = engine.create(_request(clock, addons=[{"name": "Oven", "amount": 20_000}]))
        assert booking.amount_addons == 20_000
        assert booking.amount_estimated == 138_000

    def test_start_in_the_past_rejected(self, engine, clock):
        with pytest.raises(ValidationError):
            engine.create(_request(clock, scheduled_start=clock() - timedelta(hours=1)))

    def test_unavailable_professional_rejected(self, engine, clock, availability, db):
        availability.available = False
        with pytest.raises(BookingCreationError):
            engine.create(_request(clock))
        assert db.query(Booking).count() == 0

    def test_credit_redemption_discounts_amount_due(self, engine, ledger, clock, processor):
        ledger.earn("cust-1", "pro-1", 50_000)
        booking = engine.create(_request(clock, redeem_credit=True))
        assert booking.credit_applied == 50_000
        assert ledger.get_available("cust-1", "pro-1") == 0

        booking = engine.request_payment(booking.id)
        assert processor.intents[booking.payment_intent_id].amount == 68_000

    def test_requested_credit_amount_is_honoured(self, engine, ledger, clock):
        ledger.earn("cust-1", "pro-1", 50_000)
        booking = engine.create(_request(clock, redeem_credit=True, credit_amount=20_000))
        assert booking.credit_applied == 20_000
        assert ledger.get_available("cust-1", "pro-1") == 30_000

    def test_exact_redemption_shortfall_creates_nothing(self, engine, ledger, clock, db):
        ledger.earn("cust-1", "pro-1", 50_000)
        with pytest.raises(InsufficientCredit):
            engine.create(_request(clock, redeem_credit=True, credit_amount=80_000, exact_redemption=True))
        assert db.query(Booking).count() == 0
        assert ledger.get_available("cust-1", "pro-1") == 50_000


class TestAuthorization:
    def test_request_payment_opens_manual_capture_intent(self, engine, clock, processor):
        booking = engine.create(_request(clock))
        booking = engine.request_payment(booking.id, "cus_123")
        assert booking.status == BookingStatus.PENDING_PAYMENT
        intent = processor.intents[booking.payment_intent_id]
        assert intent.amount == 118_000
        assert intent.booking_public_id == booking.public_id

    def test_request_payment_is_idempotent(self, engine, clock, processor):
        booking = engine.create(_request(clock))
        first = engine.request_payment(booking.id)
        second = engine.request_payment(booking.id)
        assert first.payment_intent_id == second.payment_intent_id
        assert processor.create_calls == 1

    def test_authorize_records_amount(self, engine, clock, events):
        booking = engine.create(_request(clock))
        booking = engine.request_payment(booking.id)
        booking = engine.authorize(booking.id, booking.payment_intent_id)
        assert booking.status == BookingStatus.AUTHORIZED
        assert booking.amount_authorized == 118_000
        assert booking.authorized_at is not None
        assert ev.BOOKING_AUTHORIZED in [e.name for e in events.published]

    def test_authorize_is_idempotent(self, engine, clock, events):
        booking = engine.create(_request(clock))
        booking = engine.request_payment(booking.id)
        engine.authorize(booking.id, booking.payment_intent_id)
        again = engine.authorize(booking.id, booking.payment_intent_id)
        assert again.status == BookingStatus.AUTHORIZED
        assert [e.name for e in events.published].count(ev.BOOKING_AUTHORIZED) == 1

    def test_repeat_authorize_checks_the_intent_amount(self, engine, clock, processor):
        booking = engine.request_payment(engine.create(_request(clock)).id)
        engine.authorize(booking.id, booking.payment_intent_id)

        # The hold was re-placed at the processor for a different amount
        intent = processor.intents[booking.payment_intent_id]
        processor.intents[intent.id] = replace(intent, amount=90_000)

        with pytest.raises(PaymentStateMismatch):
            engine.authorize(booking.id, booking.payment_intent_id)
        assert engine.get_booking(booking.id).amount_authorized == 118_000

    def test_intent_of_another_booking_is_rejected(self, engine, clock):
        first = engine.request_payment(engine.create(_request(clock)).id)
        second = engine.request_payment(engine.create(_request(clock, customer_id="cust-2")).id)
        with pytest.raises(PaymentStateMismatch):
            engine.authorize(first.id, second.payment_intent_id)
        assert engine.get_booking(first.id).status == BookingStatus.PENDING_PAYMENT

    def test_intent_not_awaiting_capture_is_rejected(self, engine, clock, processor):
        booking = engine.request_payment(engine.create(_request(clock)).id)
        processor.cancel(booking.payment_intent_id)
        with pytest.raises(PaymentStateMismatch):
            engine.authorize(booking.id, booking.payment_intent_id)

    def test_fully_credited_booking_needs_no_intent(self, engine, ledger, clock, processor):
        ledger.earn("cust-1", "pro-1", 200_000)
        booking = engine.create(_request(clock, redeem_credit=True))
        booking = engine.request_payment(booking.id)
        assert booking.status == BookingStatus.AUTHORIZED
        assert booking.amount_authorized == 0
        assert booking.payment_intent_id is None
        assert processor.create_calls == 0


class TestTransitions:
    def test_confirm_requires_authorization(self, engine, clock):
        booking = engine.create(_request(clock))
        with pytest.raises(StateConflictError) as exc_info:
            engine.confirm(booking.id)
        assert exc_info.value.current_status == BookingStatus.PENDING
        assert exc_info.value.attempted == "confirm"

    def test_start_moves_to_in_progress(self, engine, clock):
        booking = _confirmed(engine, clock)
        booking = engine.start(booking.id)
        assert booking.status == BookingStatus.IN_PROGRESS
        assert booking.started_at is not None


class TestCapture:
    def test_capture_completes_and_earns_half(self, engine, ledger, clock, events):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)
        booking = engine.capture(booking.id)
        assert booking.status == BookingStatus.COMPLETED
        assert booking.amount_captured == 118_000
        assert booking.amount_final == 118_000
        assert booking.amount_captured <= booking.amount_authorized
        assert ledger.get_available("cust-1", "pro-1") == 59_000

        names = [e.name for e in events.published]
        assert ev.BOOKING_COMPLETED in names
        assert ev.CREDIT_EARNED in names

    def test_partial_capture(self, engine, ledger, clock):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)
        booking = engine.capture(booking.id, 100_000)
        assert booking.amount_captured == 100_000
        assert ledger.get_available("cust-1", "pro-1") == 50_000

    def test_capture_before_service_ends_rejected(self, engine, clock):
        booking = _confirmed(engine, clock)
        with pytest.raises(StateConflictError):
            engine.capture(booking.id)

    def test_capture_above_authorization_rejected(self, engine, clock):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)
        with pytest.raises(ValidationError):
            engine.capture(booking.id, 118_001)

    def test_capture_from_pending_rejected(self, engine, clock):
        booking = engine.create(_request(clock))
        _after_service(clock, booking)
        with pytest.raises(StateConflictError):
            engine.capture(booking.id)

    def test_retry_returns_same_state_without_earning_again(self, engine, ledger, clock, db):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)
        first = engine.capture(booking.id)
        second = engine.capture(booking.id)
        assert second.status == first.status == BookingStatus.COMPLETED
        assert second.amount_captured == first.amount_captured
        assert ledger.get_available("cust-1", "pro-1") == 59_000
        assert db.query(TrialCreditTransaction).filter_by(booking_id=booking.id, kind="earn").count() == 1

    def test_retry_with_different_amount_conflicts(self, engine, clock):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)
        engine.capture(booking.id, 100_000)
        with pytest.raises(StateConflictError):
            engine.capture(booking.id, 90_000)

    def test_processor_failure_keeps_status(self, engine, ledger, clock, processor):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)
        processor.fail_next_capture = PaymentProcessorError("Card declined")

        with pytest.raises(PaymentProcessorError):
            engine.capture(booking.id)

        booking = engine.get_booking(booking.id)
        assert booking.status == BookingStatus.CONFIRMED
        assert booking.last_payment_error == "Card declined"
        assert ledger.get_available("cust-1", "pro-1") == 0

        # A retry after the failure goes through
        assert engine.capture(booking.id).status == BookingStatus.COMPLETED

    def test_concurrent_captures_complete_once(self, engine, clock, processor, session_factory, scheduler_factory):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)

        other_session = session_factory()
        try:
            other_engine = scheduler_factory(other_session).bookings
            other_result = {}

            def race():
                other_result["booking"] = other_engine.capture(booking.id)

            # The second request completes while the first is still waiting on the processor
            processor.on_capture = race
            result = engine.capture(booking.id)

            assert other_result["booking"].status == BookingStatus.COMPLETED
            assert result.status == BookingStatus.COMPLETED
            assert result.amount_captured == other_result["booking"].amount_captured == 118_000
            earns = (
                other_session.query(TrialCreditTransaction)
                .filter_by(booking_id=booking.id, kind="earn")
                .count()
            )
            assert earns == 1
            assert engine.ledger.get_available("cust-1", "pro-1") == 59_000
        finally:
            other_session.close()

    def test_cancel_during_capture_voids_the_hold(
        self, engine, ledger, clock, processor, session_factory, scheduler_factory
    ):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)

        other_session = session_factory()
        try:
            other_engine = scheduler_factory(other_session).bookings

            def race():
                other_engine.cancel(booking.id, "admin", "Dispute")

            processor.on_capture = race
            with pytest.raises(PaymentProcessorError):
                engine.capture(booking.id)

            booking = engine.get_booking(booking.id)
            assert booking.status == BookingStatus.CANCELLED
            assert booking.amount_captured is None
            assert processor.intents[booking.payment_intent_id].status == INTENT_CANCELED
            assert ledger.get_available("cust-1", "pro-1") == 0
        finally:
            other_session.close()

    def test_capture_that_loses_to_cancel_is_recorded(self, engine, ledger, clock, processor, session_factory):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)

        other_session = session_factory()
        try:

            def race():
                # The cancel got its status change in after the processor accepted the capture
                other_session.query(Booking).filter_by(id=booking.id).update(
                    {"status": BookingStatus.CANCELLED, "cancelled_by": "admin"}
                )
                other_session.commit()

            processor.on_capture = race
            with pytest.raises(StateConflictError):
                engine.capture(booking.id)

            booking = engine.get_booking(booking.id)
            assert booking.status == BookingStatus.CANCELLED
            assert booking.amount_captured == 118_000
            assert "Captured 118000" in booking.last_payment_error
            assert ledger.get_available("cust-1", "pro-1") == 0
        finally:
            other_session.close()

    def test_fully_credited_booking_completes_without_processor(self, engine, ledger, clock, processor):
        ledger.earn("cust-1", "pro-1", 200_000)
        booking = engine.create(_request(clock, redeem_credit=True))
        engine.request_payment(booking.id)
        engine.confirm(booking.id)
        _after_service(clock, booking)

        booking = engine.capture(booking.id)
        assert booking.status == BookingStatus.COMPLETED
        assert booking.amount_captured == 0
        assert processor.capture_calls == 0


class TestReconcile:
    def test_unrecorded_capture_is_completed(self, engine, ledger, clock, processor):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)
        # The processor captured but our call timed out before recording it
        processor.mark_captured(booking.payment_intent_id, 118_000)

        booking = engine.reconcile(booking.id)
        assert booking.status == BookingStatus.COMPLETED
        assert booking.amount_captured == 118_000
        assert ledger.get_available("cust-1", "pro-1") == 59_000

    def test_uncaptured_intent_leaves_booking_alone(self, engine, clock):
        booking = _confirmed(engine, clock)
        assert engine.reconcile(booking.id).status == BookingStatus.CONFIRMED

    def test_reconcile_pending_sweeps_ended_bookings(self, engine, clock, processor):
        booking = _confirmed(engine, clock)
        processor.mark_captured(booking.payment_intent_id, 118_000)
        assert engine.reconcile_pending() == 0  # service not over yet
        _after_service(clock, booking)
        assert engine.reconcile_pending() == 1


class TestCancel:
    def test_late_cancellation_records_fee(self, engine, clock, events):
        booking = engine.create(_request(clock, scheduled_start=clock() + timedelta(hours=10)))
        booking = engine.cancel(booking.id, "customer", "Change of plans")
        assert booking.status == BookingStatus.CANCELLED
        assert booking.late_cancel_fee == 50_000
        assert booking.amount_final == 50_000
        assert booking.cancelled_by == "customer"
        assert ev.BOOKING_CANCELLED in [e.name for e in events.published]

    def test_early_cancellation_is_free(self, engine, clock):
        booking = engine.create(_request(clock, scheduled_start=clock() + timedelta(days=3)))
        booking = engine.cancel(booking.id, "customer")
        assert booking.late_cancel_fee is None
        assert booking.amount_final == 0

    def test_cancellation_releases_redeemed_credit(self, engine, ledger, clock):
        ledger.earn("cust-1", "pro-1", 50_000)
        booking = engine.create(_request(clock, redeem_credit=True))
        engine.cancel(booking.id, "customer")
        assert ledger.get_available("cust-1", "pro-1") == 50_000

    def test_cancel_is_idempotent(self, engine, clock):
        booking = engine.create(_request(clock))
        engine.cancel(booking.id, "customer")
        assert engine.cancel(booking.id, "professional").cancelled_by == "customer"

    def test_in_progress_needs_an_operator(self, engine, clock):
        booking = engine.start(_confirmed(engine, clock).id)
        with pytest.raises(StateConflictError):
            engine.cancel(booking.id, "customer")
        assert engine.cancel(booking.id, "admin").status == BookingStatus.CANCELLED

    def test_completed_booking_cannot_be_cancelled(self, engine, clock):
        booking = _confirmed(engine, clock)
        _after_service(clock, booking)
        engine.capture(booking.id)
        with pytest.raises(StateConflictError):
            engine.cancel(booking.id, "admin")

    def test_unknown_actor_rejected(self, engine, clock):
        booking = engine.create(_request(clock))
        with pytest.raises(ValidationError):
            engine.cancel(booking.id, "robot")

    def test_cancel_releases_the_authorization_hold(self, engine, clock, processor):
        booking = _confirmed(engine, clock)
        booking = engine.cancel(booking.id, "customer")
        assert booking.status == BookingStatus.CANCELLED
        assert processor.intents[booking.payment_intent_id].status == INTENT_CANCELED
        assert processor.cancel_calls == 1

    def test_cancel_without_intent_skips_the_processor(self, engine, clock, processor):
        booking = engine.create(_request(clock))
        engine.cancel(booking.id, "customer")
        assert processor.cancel_calls == 0

    def test_captured_payment_blocks_cancel(self, engine, clock, processor):
        booking = _confirmed(engine, clock)
        # Captured at the processor but not yet recorded here
        processor.mark_captured(booking.payment_intent_id, 118_000)

        with pytest.raises(StateConflictError):
            engine.cancel(booking.id, "customer")
        assert engine.get_booking(booking.id).status == BookingStatus.CONFIRMED

    def test_failed_void_keeps_status(self, engine, clock, processor, monkeypatch):
        booking = _confirmed(engine, clock)

        def unreachable(intent_id):
            raise PaymentProcessorError("Payment processor cancel timed out", outcome_unknown=True)

        monkeypatch.setattr(processor, "cancel", unreachable)
        with pytest.raises(PaymentProcessorError):
            engine.cancel(booking.id, "customer")

        booking = engine.get_booking(booking.id)
        assert booking.status == BookingStatus.CONFIRMED
        assert booking.last_payment_error == "Payment processor cancel timed out"
        assert processor.intents[booking.payment_intent_id].status == INTENT_REQUIRES_CAPTURE


class TestDecline:
    def test_assigned_professional_declines(self, engine, ledger, clock, events):
        ledger.earn("cust-1", "pro-1", 50_000)
        booking = engine.create(_request(clock, redeem_credit=True))
        booking = engine.decline(booking.id, "pro-1", "Fully booked")
        assert booking.status == BookingStatus.DECLINED
        assert booking.decline_reason == "Fully booked"
        assert booking.amount_captured is None
        assert ledger.get_available("cust-1", "pro-1") == 50_000
        assert ev.BOOKING_DECLINED in [e.name for e in events.published]

    def test_other_professional_cannot_decline(self, engine, clock):
        booking = engine.create(_request(clock))
        with pytest.raises(ValidationError):
            engine.decline(booking.id, "pro-2")

    def test_authorized_booking_cannot_be_declined(self, engine, clock):
        booking = engine.request_payment(engine.create(_request(clock)).id)
        engine.authorize(booking.id, booking.payment_intent_id)
        with pytest.raises(StateConflictError):
            engine.decline(booking.id, "pro-1")

    def test_decline_releases_the_authorization_hold(self, engine, clock, processor):
        booking = engine.request_payment(engine.create(_request(clock)).id)
        booking = engine.decline(booking.id, "pro-1")
        assert booking.status == BookingStatus.DECLINED
        assert processor.intents[booking.payment_intent_id].status == INTENT_CANCELED
