"""
Shared fixtures: SQLite-backed sessions, a fake payment processor, a fixed clock.

Run with:
    pytest casaora/tests -v
"""

import os
import tempfile
from datetime import datetime, timedelta

# Point the app at a throwaway database before any casaora module reads config
_TEST_DIR = tempfile.mkdtemp(prefix="casaora-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'app.db')}"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
os.environ.pop("NOTIFICATION_WEBHOOK_URL", None)

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from casaora import models  # noqa: E402,F401
from casaora.database import Base, build_engine  # noqa: E402
from casaora.dependencies import build_scheduler  # noqa: E402
from casaora.domain.bookings.payments import (  # noqa: E402
    INTENT_CANCELED,
    INTENT_REQUIRES_CAPTURE,
    INTENT_SUCCEEDED,
    PaymentIntent,
)
from casaora.domain.pricing.resolver import PricingRuleResolver  # noqa: E402
from casaora.events import EventBus  # noqa: E402
from casaora.exceptions import PaymentProcessorError  # noqa: E402


class FixedClock:
    """Naive-UTC clock the tests move by hand"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePaymentProcessor:
    """In-memory manual-capture processor; intents are authorized as soon as they exist"""

    def __init__(self):
        self.intents: dict[str, PaymentIntent] = {}
        self.captures_by_key: dict[str, PaymentIntent] = {}
        self.create_calls = 0
        self.capture_calls = 0
        self.cancel_calls = 0
        self.fail_next_capture = None
        self.on_capture = None

    def create_intent(self, amount, currency, customer, metadata, idempotency_key=None):
        self.create_calls += 1
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = PaymentIntent(
            id=intent_id,
            status=INTENT_REQUIRES_CAPTURE,
            amount=amount,
            currency=currency,
            metadata=dict(metadata),
        )
        return self.intents[intent_id]

    def retrieve(self, intent_id):
        if intent_id not in self.intents:
            raise PaymentProcessorError("No such payment intent", payment_intent_id=intent_id)
        return self.intents[intent_id]

    def capture(self, intent_id, amount=None, idempotency_key=None):
        self.capture_calls += 1
        if idempotency_key and idempotency_key in self.captures_by_key:
            return self.captures_by_key[idempotency_key]

        if self.on_capture is not None:
            hook, self.on_capture = self.on_capture, None
            hook()
            if idempotency_key and idempotency_key in self.captures_by_key:
                return self.captures_by_key[idempotency_key]

        if self.fail_next_capture is not None:
            error, self.fail_next_capture = self.fail_next_capture, None
            raise error

        intent = self.retrieve(intent_id)
        if intent.status != INTENT_REQUIRES_CAPTURE:
            raise PaymentProcessorError("Intent cannot be captured", payment_intent_id=intent_id)
        captured = self.mark_captured(intent_id, amount if amount is not None else intent.amount)
        if idempotency_key:
            self.captures_by_key[idempotency_key] = captured
        return captured

    def mark_captured(self, intent_id, amount):
        """Simulate a capture the processor completed (e.g. a timed-out call that succeeded)"""
        intent = self.intents[intent_id]
        captured = PaymentIntent(
            id=intent.id,
            status=INTENT_SUCCEEDED,
            amount=intent.amount,
            amount_received=amount,
            currency=intent.currency,
            metadata=intent.metadata,
        )
        self.intents[intent_id] = captured
        return captured

    def cancel(self, intent_id):
        self.cancel_calls += 1
        intent = self.retrieve(intent_id)
        if intent.status == INTENT_SUCCEEDED:
            raise PaymentProcessorError("Intent already captured", payment_intent_id=intent_id)
        if intent.status == INTENT_CANCELED:
            return intent
        canceled = PaymentIntent(
            id=intent.id,
            status=INTENT_CANCELED,
            amount=intent.amount,
            currency=intent.currency,
            metadata=intent.metadata,
        )
        self.intents[intent_id] = canceled
        return canceled


class FakeAvailability:
    def __init__(self, available: bool = True):
        self.available = available
        self.calls = []

    def is_available(self, professional_id, start, end):
        self.calls.append((professional_id, start, end))
        return self.available


class DictCache:
    """Stand-in for the Redis cache wrapper"""

    def __init__(self):
        self.store = {}
        self.gets = 0

    def get(self, key):
        self.gets += 1
        return self.store.get(key)

    def set(self, key, value, ttl=300):
        self.store[key] = value
        return True

    def delete(self, key):
        self.store.pop(key, None)
        return True


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'casaora.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 1, 5, 15, 0))


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def availability():
    return FakeAvailability()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def scheduler_factory(processor, clock, availability):
    """Build a fully wired scheduler (and booking engine) for any session"""

    def factory(session, events=None):
        return build_scheduler(
            session,
            processor,
            events=events or EventBus(),
            resolver=PricingRuleResolver(session, cache=None),
            availability=availability,
            clock=clock,
        )

    return factory


@pytest.fixture
def scheduler(db, scheduler_factory, events):
    return scheduler_factory(db, events)


@pytest.fixture
def engine(scheduler):
    return scheduler.bookings


@pytest.fixture
def ledger(engine):
    return engine.ledger
