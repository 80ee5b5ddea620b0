"""Domain exceptions for the booking engine

Services raise these; the HTTP layer (main.py) maps them to responses.
"""

from typing import Optional


class BookingEngineError(Exception):
    """Base class for all booking engine errors"""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(BookingEngineError):
    """Malformed or out-of-range input; never persisted"""


class NotFoundError(BookingEngineError):
    """Unknown booking, plan, rule or credit account"""


class StateConflictError(BookingEngineError):
    """Transition attempted from an invalid current state"""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        attempted: Optional[str] = None,
        **context,
    ):
        super().__init__(message, **context)
        self.current_status = current_status
        self.attempted = attempted


class PaymentStateMismatch(StateConflictError):
    """Processor intent does not reference this booking or is in the wrong state"""


class PaymentProcessorError(BookingEngineError):
    """The payment processor rejected the request or timed out"""

    def __init__(self, message: str, outcome_unknown: bool = False, **context):
        super().__init__(message, **context)
        # True for timeouts/connection errors: the charge may have gone through
        self.outcome_unknown = outcome_unknown


class InsufficientCredit(BookingEngineError):
    """Raised only when an exact-amount redemption cannot be covered"""

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Requested {requested} credit but only {available} is available",
            requested=requested,
            available=available,
        )
        self.requested = requested
        self.available = available


class BookingCreationError(BookingEngineError):
    """A booking could not be created (e.g. professional unavailable)"""
