"""Booking router - FastAPI endpoints for the booking lifecycle and payment webhooks"""

import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request

from ...auth import Principal, get_current_principal, require_admin
from ...config import STRIPE_WEBHOOK_SECRET
from ...dependencies import get_booking_engine
from ...exceptions import BookingEngineError, PaymentProcessorError
from ...models import Booking
from .schemas import (
    AuthorizeRequest,
    BookingCreate,
    BookingRead,
    CancelRequest,
    CaptureRequest,
    DeclineRequest,
    PaymentRequest,
    PaymentRequestResponse,
)
from .state_machine import BookingStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])
webhooks_router = APIRouter(tags=["Webhooks"])


def _ensure_party(principal: Principal, booking: Booking) -> None:
    if principal.is_admin:
        return
    if principal.id not in (booking.customer_id, booking.professional_id):
        raise HTTPException(status_code=403, detail="Not allowed to access this booking")


def _ensure_role(principal: Principal, booking: Booking, role: str) -> None:
    if principal.is_admin:
        return
    owner = booking.customer_id if role == "customer" else booking.professional_id
    if principal.role != role or principal.id != owner:
        raise HTTPException(status_code=403, detail=f"Only the booking's {role} can do this")


# ============================================================================
# BOOKINGS
# ============================================================================


@router.post("", response_model=BookingRead, status_code=201)
async def create_booking(
    body: BookingCreate,
    principal: Principal = Depends(get_current_principal),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    """Create a booking (optionally redeeming trial credit)"""
    if not principal.is_admin and principal.id != body.customer_id:
        raise HTTPException(status_code=403, detail="Customers can only book for themselves")
    if body.plan_id is not None or body.occurrence_date is not None or body.discount_percentage:
        raise HTTPException(status_code=400, detail="Plan fields are set by the plan scheduler")
    return engine.create(body)


@router.get("", response_model=list[BookingRead])
async def list_bookings(
    status: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    """List the caller's bookings"""
    if principal.role == "professional":
        return engine.list_bookings(professional_id=principal.id, status=status)
    if principal.is_admin:
        return engine.list_bookings(status=status)
    return engine.list_bookings(customer_id=principal.id, status=status)


@router.get("/{booking_id}", response_model=BookingRead)
async def get_booking(
    booking_id: int,
    principal: Principal = Depends(get_current_principal),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    booking = engine.get_booking(booking_id)
    _ensure_party(principal, booking)
    return booking


@router.post("/{booking_id}/payment-intent", response_model=PaymentRequestResponse)
async def request_payment(
    booking_id: int,
    body: PaymentRequest,
    principal: Principal = Depends(get_current_principal),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    """Open the authorization hold for a pending booking"""
    _ensure_role(principal, engine.get_booking(booking_id), "customer")
    booking = engine.request_payment(booking_id, body.processor_customer_id)
    return PaymentRequestResponse(
        booking_id=booking.id,
        payment_intent_id=booking.payment_intent_id or "",
        amount=engine.amount_due(booking),
        status=booking.status,
    )


@router.post("/{booking_id}/authorize", response_model=BookingRead)
async def authorize_booking(
    booking_id: int,
    body: AuthorizeRequest,
    principal: Principal = Depends(get_current_principal),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    _ensure_role(principal, engine.get_booking(booking_id), "customer")
    return engine.authorize(booking_id, body.payment_intent_id)


@router.post("/{booking_id}/confirm", response_model=BookingRead)
async def confirm_booking(
    booking_id: int,
    principal: Principal = Depends(get_current_principal),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    """Professional accepts an authorized booking"""
    _ensure_role(principal, engine.get_booking(booking_id), "professional")
    return engine.confirm(booking_id)


@router.post("/{booking_id}/start", response_model=BookingRead)
async def start_booking(
    booking_id: int,
    principal: Principal = Depends(get_current_principal),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    """Professional check-in"""
    _ensure_role(principal, engine.get_booking(booking_id), "professional")
    return engine.start(booking_id)


@router.post("/{booking_id}/capture", response_model=BookingRead)
async def capture_booking(
    booking_id: int,
    body: CaptureRequest,
    principal: Principal = Depends(get_current_principal),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    """Capture the held payment once the service has ended"""
    _ensure_role(principal, engine.get_booking(booking_id), "professional")
    return engine.capture(booking_id, body.amount)


@router.post("/{booking_id}/cancel", response_model=BookingRead)
async def cancel_booking(
    booking_id: int,
    body: CancelRequest,
    principal: Principal = Depends(get_current_principal),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    _ensure_party(principal, engine.get_booking(booking_id))
    return engine.cancel(booking_id, principal.role, body.reason)


@router.post("/{booking_id}/decline", response_model=BookingRead)
async def decline_booking(
    booking_id: int,
    body: DeclineRequest,
    principal: Principal = Depends(get_current_principal),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    if principal.role != "professional":
        raise HTTPException(status_code=403, detail="Only professionals can decline bookings")
    return engine.decline(booking_id, principal.id, body.reason)


@router.post("/{booking_id}/reconcile", response_model=BookingRead)
async def reconcile_booking(
    booking_id: int,
    _admin: Principal = Depends(require_admin),
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    """Re-query the processor for a booking whose capture outcome is unknown"""
    return engine.reconcile(booking_id)


# ============================================================================
# PAYMENT WEBHOOKS
# ============================================================================


@webhooks_router.post("/webhooks/payments")
async def handle_payment_webhook(
    request: Request,
    engine: BookingStateMachine = Depends(get_booking_engine),
):
    """
    Handle Stripe PaymentIntent events

    Events handled:
    - payment_intent.amount_capturable_updated - hold placed, authorize the booking
    - payment_intent.succeeded - captured, reconcile the booking
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    if not STRIPE_WEBHOOK_SECRET:
        logger.error("❌ STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    try:
        event = stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except ValueError:
        logger.error("❌ Invalid webhook payload")
        raise HTTPException(status_code=400, detail="Invalid payload") from None
    except stripe.SignatureVerificationError:
        logger.error("❌ Invalid webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature") from None

    event_type = event["type"]
    intent = event["data"]["object"].to_dict()
    intent_id = intent["id"]
    logger.info(f"📥 Received payment webhook: {event_type} ({intent_id})")

    booking = engine.repo.get_by_payment_intent(engine.db, intent_id)
    if booking is None:
        public_id = (intent.get("metadata") or {}).get("booking_id")
        if public_id:
            booking = engine.repo.get_by_public_id(engine.db, public_id)
    if booking is None:
        logger.warning(f"⚠️ No booking for intent {intent_id}; ignoring {event_type}")
        return {"status": "ignored", "event_type": event_type}

    try:
        if event_type == "payment_intent.amount_capturable_updated":
            engine.authorize(booking.id, intent_id)
        elif event_type == "payment_intent.succeeded":
            engine.reconcile(booking.id)
        else:
            logger.info(f"ℹ️ Unhandled event type: {event_type}")
            return {"status": "ignored", "event_type": event_type}
    except PaymentProcessorError as e:
        # Surface as 502 so the processor redelivers once it is reachable again
        logger.error(f"❌ Webhook {event_type} for booking {booking.id} hit a processor error: {e.message}")
        raise
    except BookingEngineError as e:
        # Acknowledge: the processor would otherwise redeliver an event we cannot apply
        logger.warning(f"⚠️ Webhook {event_type} not applied to booking {booking.id}: {e.message}")
        return {"status": "rejected", "event_type": event_type}

    return {"status": "success", "event_type": event_type}
