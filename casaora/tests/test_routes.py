"""
Tests: HTTP surface (auth, error mapping, webhooks).

Run with:
    pytest casaora/tests/test_routes.py -v
"""

import hashlib
import hmac
import json
import time

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from casaora.auth import create_principal_token
from casaora.database import get_db
from casaora.dependencies import get_payment_processor, get_plan_scheduler
from casaora.domain.bookings import router as bookings_router_module
from casaora.domain.pricing.router import get_pricing_service
from casaora.domain.pricing.service import PricingRuleService
from casaora.exceptions import PaymentProcessorError
from casaora.main import app

WEBHOOK_SECRET = "whsec_test_secret"


def _auth(subject: str, role: str = "customer") -> dict:
    return {"Authorization": f"Bearer {create_principal_token(subject, role)}"}


CUSTOMER = _auth("cust-1")
OTHER_CUSTOMER = _auth("cust-2")
PROFESSIONAL = _auth("pro-1", "professional")
ADMIN = _auth("ops-1", "admin")

BOOKING = {
    "customer_id": "cust-1",
    "professional_id": "pro-1",
    "service_category": "cleaning",
    "duration_minutes": 120,
    "hourly_rate": 50_000,
    "city": "Bogotá",
    "country": "CO",
    "scheduled_start": "2025-01-10T14:00:00",
}


@pytest.fixture
def client(session_factory, processor, scheduler_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_scheduler(db: Session = Depends(get_db)):
        return scheduler_factory(db)

    def override_pricing(db: Session = Depends(get_db)):
        return PricingRuleService(db, cache=None)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_processor] = lambda: processor
    app.dependency_overrides[get_plan_scheduler] = override_scheduler
    app.dependency_overrides[get_pricing_service] = override_pricing
    yield TestClient(app)
    app.dependency_overrides.clear()


def _signed(payload: str, secret: str = WEBHOOK_SECRET) -> dict:
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={digest}", "content-type": "application/json"}


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestAuth:
    def test_missing_token_rejected(self, client):
        assert client.get("/bookings").status_code in (401, 403)

    def test_garbage_token_rejected(self, client):
        response = client.get("/bookings", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    def test_customer_cannot_book_for_someone_else(self, client):
        response = client.post("/bookings", json=BOOKING, headers=OTHER_CUSTOMER)
        assert response.status_code == 403

    def test_customer_cannot_manage_rules(self, client):
        response = client.post("/pricing/rules", json={"country": "CO", "commission_rate": 0.2,
                                                       "effective_from": "2024-01-01"}, headers=CUSTOMER)
        assert response.status_code == 403


class TestBookingRoutes:
    def test_create_booking(self, client):
        response = client.post("/bookings", json=BOOKING, headers=CUSTOMER)
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["amount_estimated"] == 118_000
        assert data["commission_rate"] == 0.18

    def test_plan_fields_are_not_accepted(self, client):
        response = client.post("/bookings", json={**BOOKING, "plan_id": 1}, headers=CUSTOMER)
        assert response.status_code == 400

    def test_invalid_country_rejected(self, client):
        response = client.post("/bookings", json={**BOOKING, "country": "Colombia"}, headers=CUSTOMER)
        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"][-1] == "country"

    def test_unknown_booking_is_404(self, client):
        assert client.get("/bookings/9999", headers=CUSTOMER).status_code == 404

    def test_other_customer_cannot_read_booking(self, client):
        booking_id = client.post("/bookings", json=BOOKING, headers=CUSTOMER).json()["id"]
        assert client.get(f"/bookings/{booking_id}", headers=OTHER_CUSTOMER).status_code == 403
        assert client.get(f"/bookings/{booking_id}", headers=PROFESSIONAL).status_code == 200

    def test_invalid_transition_is_a_generic_conflict(self, client):
        booking_id = client.post("/bookings", json=BOOKING, headers=CUSTOMER).json()["id"]
        response = client.post(f"/bookings/{booking_id}/confirm", headers=PROFESSIONAL)
        assert response.status_code == 409
        assert "refresh" in response.json()["detail"]

    def test_payment_authorize_confirm(self, client, processor):
        booking_id = client.post("/bookings", json=BOOKING, headers=CUSTOMER).json()["id"]

        payment = client.post(f"/bookings/{booking_id}/payment-intent", json={}, headers=CUSTOMER).json()
        assert payment["amount"] == 118_000
        assert payment["status"] == "pending_payment"

        authorized = client.post(
            f"/bookings/{booking_id}/authorize",
            json={"payment_intent_id": payment["payment_intent_id"]},
            headers=CUSTOMER,
        )
        assert authorized.json()["status"] == "authorized"

        confirmed = client.post(f"/bookings/{booking_id}/confirm", headers=PROFESSIONAL)
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "confirmed"

    def test_only_the_professional_confirms(self, client):
        booking_id = client.post("/bookings", json=BOOKING, headers=CUSTOMER).json()["id"]
        assert client.post(f"/bookings/{booking_id}/confirm", headers=CUSTOMER).status_code == 403

    def test_customer_cancels(self, client):
        booking_id = client.post("/bookings", json=BOOKING, headers=CUSTOMER).json()["id"]
        response = client.post(f"/bookings/{booking_id}/cancel", json={"reason": "plans changed"}, headers=CUSTOMER)
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancelled_by"] == "customer"


class TestPricingRoutes:
    def test_resolve_defaults(self, client):
        response = client.get("/pricing/resolve", params={"country": "CO", "city": "Bogotá"}, headers=CUSTOMER)
        assert response.status_code == 200
        assert response.json()["commission_rate"] == 0.18

    def test_resolve_invalid_country(self, client):
        response = client.get("/pricing/resolve", params={"country": "C0"}, headers=CUSTOMER)
        assert response.status_code == 422

    def test_admin_creates_rule_and_quote_uses_it(self, client):
        created = client.post(
            "/pricing/rules",
            json={"country": "CO", "commission_rate": 0.2, "effective_from": "2024-01-01"},
            headers=ADMIN,
        )
        assert created.status_code == 201

        quote = client.post(
            "/pricing/quote",
            json={"country": "CO", "hourly_rate": 50_000, "duration_minutes": 120, "as_of": "2025-01-05"},
            headers=CUSTOMER,
        )
        assert quote.status_code == 200
        assert quote.json()["commission"] == 20_000
        assert quote.json()["amount_estimated"] == 120_000


class TestCreditRoutes:
    def test_no_credits_yet(self, client):
        response = client.get("/credits", headers=CUSTOMER)
        assert response.status_code == 200
        assert response.json() == {"credits": []}

    def test_credit_with_professional(self, client):
        response = client.get("/credits/professionals/pro-1", headers=CUSTOMER)
        assert response.status_code == 200
        assert response.json()["credit_available"] == 0


class TestPlanRoutes:
    PLAN = {
        "customer_id": "cust-1",
        "professional_id": "pro-1",
        "duration_minutes": 120,
        "hourly_rate": 50_000,
        "country": "CO",
        "frequency": "weekly",
        "anchor_time": "09:00:00",
        "start_date": "2025-01-07",
    }

    def test_create_and_pause(self, client):
        created = client.post("/plans", json=self.PLAN, headers=CUSTOMER)
        assert created.status_code == 201
        plan_id = created.json()["id"]

        paused = client.post(
            f"/plans/{plan_id}/pause",
            json={"start_date": "2025-01-06", "end_date": "2025-01-20"},
            headers=CUSTOMER,
        )
        assert paused.status_code == 200
        assert paused.json()["status"] == "paused"

    def test_pause_window_validated(self, client):
        plan_id = client.post("/plans", json=self.PLAN, headers=CUSTOMER).json()["id"]
        response = client.post(
            f"/plans/{plan_id}/pause",
            json={"start_date": "2025-01-20", "end_date": "2025-01-06"},
            headers=CUSTOMER,
        )
        assert response.status_code == 422

    def test_only_operators_run_the_scheduler(self, client):
        assert client.post("/plans/run", headers=CUSTOMER).status_code == 403
        response = client.post("/plans/run", headers=ADMIN)
        assert response.status_code == 200
        assert response.json() == {"resumed": 0, "fired": 0, "failed": 0}


class TestPaymentWebhook:
    @pytest.fixture(autouse=True)
    def webhook_secret(self, monkeypatch):
        monkeypatch.setattr(bookings_router_module, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

    def test_bad_signature_rejected(self, client):
        response = client.post(
            "/webhooks/payments",
            content=b'{"type": "payment_intent.succeeded"}',
            headers={"stripe-signature": "t=1,v1=deadbeef"},
        )
        assert response.status_code == 401

    def test_capturable_event_authorizes_booking(self, client):
        booking = client.post("/bookings", json=BOOKING, headers=CUSTOMER).json()
        intent_id = client.post(
            f"/bookings/{booking['id']}/payment-intent", json={}, headers=CUSTOMER
        ).json()["payment_intent_id"]

        payload = json.dumps(
            {
                "id": "evt_test_1",
                "object": "event",
                "type": "payment_intent.amount_capturable_updated",
                "data": {
                    "object": {
                        "id": intent_id,
                        "object": "payment_intent",
                        "metadata": {"booking_id": booking["public_id"]},
                    }
                },
            }
        )
        response = client.post("/webhooks/payments", content=payload, headers=_signed(payload))
        assert response.status_code == 200
        assert response.json()["status"] == "success"

        current = client.get(f"/bookings/{booking['id']}", headers=CUSTOMER).json()
        assert current["status"] == "authorized"

    def test_unknown_intent_is_ignored(self, client):
        payload = json.dumps(
            {
                "id": "evt_test_2",
                "object": "event",
                "type": "payment_intent.succeeded",
                "data": {"object": {"id": "pi_unknown", "object": "payment_intent", "metadata": {}}},
            }
        )
        response = client.post("/webhooks/payments", content=payload, headers=_signed(payload))
        assert response.json()["status"] == "ignored"

    def test_processor_outage_asks_for_redelivery(self, client, processor, monkeypatch):
        booking = client.post("/bookings", json=BOOKING, headers=CUSTOMER).json()
        intent_id = client.post(
            f"/bookings/{booking['id']}/payment-intent", json={}, headers=CUSTOMER
        ).json()["payment_intent_id"]

        def unreachable(intent_id):
            raise PaymentProcessorError("Payment processor retrieve timed out", outcome_unknown=True)

        monkeypatch.setattr(processor, "retrieve", unreachable)
        payload = json.dumps(
            {
                "id": "evt_test_3",
                "object": "event",
                "type": "payment_intent.amount_capturable_updated",
                "data": {
                    "object": {
                        "id": intent_id,
                        "object": "payment_intent",
                        "metadata": {"booking_id": booking["public_id"]},
                    }
                },
            }
        )
        response = client.post("/webhooks/payments", content=payload, headers=_signed(payload))
        assert response.status_code == 502

        current = client.get(f"/bookings/{booking['id']}", headers=CUSTOMER).json()
        assert current["status"] == "pending_payment"
