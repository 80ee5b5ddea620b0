"""
Payment processor integration
Only the authorize-now / capture-later contract is modelled here.
Every call runs with a bounded timeout and a fixed number of network retries;
a timeout is reported as an unknown outcome so callers re-query instead of
assuming failure.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import stripe

from ...config import PAYMENT_MAX_RETRIES, PAYMENT_REQUEST_TIMEOUT, STRIPE_SECRET_KEY
from ...exceptions import PaymentProcessorError

logger = logging.getLogger(__name__)

INTENT_REQUIRES_CAPTURE = "requires_capture"
INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    status: str
    amount: int
    amount_received: int = 0
    currency: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def booking_public_id(self) -> Optional[str]:
        return self.metadata.get("booking_id")


class PaymentProcessor(Protocol):
    def create_intent(
        self,
        amount: int,
        currency: str,
        customer: Optional[str],
        metadata: dict,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent: ...

    def retrieve(self, intent_id: str) -> PaymentIntent: ...

    def capture(
        self, intent_id: str, amount: Optional[int] = None, idempotency_key: Optional[str] = None
    ) -> PaymentIntent: ...

    def cancel(self, intent_id: str) -> PaymentIntent: ...


def _to_intent(obj) -> PaymentIntent:
    # StripeObject is not a dict; read fields from its plain-dict form
    obj = obj.to_dict()
    metadata = obj.get("metadata") or {}
    return PaymentIntent(
        id=obj["id"],
        status=obj["status"],
        amount=obj.get("amount") or 0,
        amount_received=obj.get("amount_received") or 0,
        currency=(obj.get("currency") or "").upper() or None,
        metadata=dict(metadata),
    )


class StripePaymentProcessor:
    """Stripe PaymentIntents with capture_method=manual"""

    def __init__(
        self,
        api_key: Optional[str] = STRIPE_SECRET_KEY,
        timeout: float = PAYMENT_REQUEST_TIMEOUT,
        max_retries: int = PAYMENT_MAX_RETRIES,
    ):
        self.api_key = api_key
        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY not set; payment operations will fail until configured")
        stripe.max_network_retries = max_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        logger.info(f"Stripe client configured (timeout={timeout}s, retries={max_retries})")

    def _call(self, operation: str, intent_id: Optional[str], fn, *args, **kwargs) -> PaymentIntent:
        if not self.api_key:
            raise PaymentProcessorError("Payment processor not configured", operation=operation)
        try:
            return _to_intent(fn(*args, api_key=self.api_key, **kwargs))
        except stripe.APIConnectionError as e:
            logger.error(f"⏱️ Stripe {operation} outcome unknown for intent {intent_id}: {e}")
            raise PaymentProcessorError(
                f"Payment processor {operation} timed out",
                outcome_unknown=True,
                operation=operation,
                payment_intent_id=intent_id,
            ) from e
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe {operation} failed for intent {intent_id}: {e}")
            raise PaymentProcessorError(
                f"Payment processor rejected {operation}",
                operation=operation,
                payment_intent_id=intent_id,
                code=getattr(e, "code", None),
            ) from e

    def create_intent(
        self,
        amount: int,
        currency: str,
        customer: Optional[str],
        metadata: dict,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        params = {
            "amount": amount,
            "currency": currency.lower(),
            "capture_method": "manual",
            "metadata": metadata,
        }
        if customer:
            params["customer"] = customer
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        return self._call("create_intent", None, stripe.PaymentIntent.create, **params)

    def retrieve(self, intent_id: str) -> PaymentIntent:
        return self._call("retrieve", intent_id, stripe.PaymentIntent.retrieve, intent_id)

    def capture(
        self, intent_id: str, amount: Optional[int] = None, idempotency_key: Optional[str] = None
    ) -> PaymentIntent:
        params = {}
        if amount is not None:
            params["amount_to_capture"] = amount
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        return self._call("capture", intent_id, stripe.PaymentIntent.capture, intent_id, **params)

    def cancel(self, intent_id: str) -> PaymentIntent:
        """Void the authorization hold; Stripe refuses once the intent is captured"""
        return self._call("cancel", intent_id, stripe.PaymentIntent.cancel, intent_id)
