import os

# Must be set before tvbooking.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

from datetime import date, datetime, timedelta
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest
import resend
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tvbooking import models
from tvbooking.database import Base
from tvbooking.domain.payments.stripe_service import StripeService
from tvbooking.services.notification_service import NotificationService
from tvbooking.wiring import build_container

DATA_DIR = Path(__file__).parent / "data"
ZCTA_TEST_PATH = str(DATA_DIR / "zcta_test.geojson")

# Scenario polygon, (lat, lng)
SQUARE_POLYGON = [(30.0, -97.0), (30.0, -96.9), (29.9, -96.9), (29.9, -97.0)]


# --------------------------------------------------------------------
# Fake Stripe API
# --------------------------------------------------------------------
class FakeStripe:
    """In-memory PaymentIntent API served through httpx.MockTransport"""

    def __init__(self):
        self.intents = {}
        self.refunds = []
        self.charges = []
        self.requests = []
        self.fail_next = 0
        # Requests that raise a read timeout before reaching the API
        self.timeout_next = 0
        # POSTs that are applied and then answered with a 500
        self.fail_after_write = 0
        self.idempotent_responses = {}
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_test_{self._seq}"

    def requests_to(self, path: str) -> list:
        return [r for r in self.requests if r.url.path.endswith(path)]

    def add_intent(self, status: str, amount: int = 10000, currency: str = "usd", **extra) -> dict:
        intent_id = self._next_id("pi")
        intent = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount,
            "amount_received": amount if status == "succeeded" else 0,
            "currency": currency,
            "status": status,
            "client_secret": f"{intent_id}_secret",
            "metadata": {},
        }
        intent.update(extra)
        self.intents[intent_id] = intent
        return intent

    @staticmethod
    def _error(status_code: int, code: str, message: str, intent: dict = None) -> httpx.Response:
        error = {"type": "invalid_request_error", "code": code, "message": message}
        if intent is not None:
            error["payment_intent"] = intent
        return httpx.Response(status_code, json={"error": error})

    def _unexpected_state(self, intent: dict) -> httpx.Response:
        return self._error(
            400,
            "payment_intent_unexpected_state",
            f"This PaymentIntent's status is {intent['status']}.",
            intent,
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout_next:
            self.timeout_next -= 1
            raise httpx.ReadTimeout("timed out", request=request)
        if self.fail_next:
            self.fail_next -= 1
            return httpx.Response(500, json={"error": {"message": "boom"}})

        key = request.headers.get("Idempotency-Key")
        if key and key in self.idempotent_responses:
            status_code, body = self.idempotent_responses[key]
            return httpx.Response(status_code, json=body)

        response = self._route(request)
        if key and request.method == "POST":
            self.idempotent_responses[key] = (response.status_code, response.json())
        if self.fail_after_write and request.method == "POST":
            self.fail_after_write -= 1
            return httpx.Response(500, json={"error": {"message": "boom"}})
        return response

    def _route(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        parts = request.url.path.split("/")[2:]  # drop "", "v1"

        if parts == ["payment_intents"] and request.method == "POST":
            if form.get("payment_method") == "pm_card_declined":
                return httpx.Response(
                    402,
                    json={
                        "error": {
                            "type": "card_error",
                            "code": "card_declined",
                            "message": "Your card was declined.",
                        }
                    },
                )
            status = "requires_capture" if form.get("payment_method") else "requires_payment_method"
            metadata = {k[len("metadata[") : -1]: v for k, v in form.items() if k.startswith("metadata[")}
            intent = self.add_intent(status, amount=int(form["amount"]), currency=form["currency"])
            intent["metadata"] = metadata
            return httpx.Response(200, json=intent)

        if parts[0] == "payment_intents" and len(parts) >= 2:
            intent = self.intents.get(parts[1])
            if intent is None:
                return self._error(404, "resource_missing", "No such payment_intent")
            action = parts[2] if len(parts) > 2 else None

            if action is None:
                return httpx.Response(200, json=intent)
            if action == "capture":
                if intent["status"] != "requires_capture":
                    return self._unexpected_state(intent)
                intent["status"] = "succeeded"
                intent["amount_received"] = int(form.get("amount_to_capture") or intent["amount"])
                self.charges.append(
                    {
                        "id": self._next_id("ch"),
                        "payment_intent": intent["id"],
                        "status": "succeeded",
                        "refunded": False,
                        "amount": intent["amount"],
                        "amount_captured": intent["amount_received"],
                        "currency": intent["currency"],
                    }
                )
                return httpx.Response(200, json=intent)
            if action == "cancel":
                if intent["status"] in ("succeeded", "canceled"):
                    return self._unexpected_state(intent)
                intent["status"] = "canceled"
                return httpx.Response(200, json=intent)
            if action == "increment_authorization":
                if intent["status"] != "requires_capture":
                    return self._unexpected_state(intent)
                intent["amount"] = int(form["amount"])
                return httpx.Response(200, json=intent)

        if parts == ["refunds"]:
            intent = self.intents[form["payment_intent"]]
            refund = {
                "id": self._next_id("re"),
                "amount": int(form.get("amount") or intent["amount_received"]),
                "currency": intent["currency"],
                "charge": "ch_refunded",
                "payment_intent": intent["id"],
            }
            self.refunds.append(refund)
            return httpx.Response(200, json=refund)

        if parts == ["charges"]:
            return httpx.Response(200, json={"object": "list", "data": list(self.charges), "has_more": False})

        return self._error(404, "resource_missing", f"Unhandled {request.method} {request.url.path}")


class FakeTwilio:
    def __init__(self):
        self.messages = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.messages.append(form)
        return httpx.Response(201, json={"sid": f"SM{len(self.messages):04d}", "status": "queued"})


# --------------------------------------------------------------------
# Fixtures
# --------------------------------------------------------------------
@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def stripe(fake_stripe):
    return StripeService(
        api_key="sk_test_123",
        base_url="https://api.stripe.test/v1",
        transport=httpx.MockTransport(fake_stripe.handler),
    )


@pytest.fixture
def sent_emails(monkeypatch):
    sent = []

    def fake_send(payload):
        sent.append(payload)
        return {"id": f"email_{len(sent)}"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    return sent


@pytest.fixture
def fake_twilio():
    return FakeTwilio()


@pytest.fixture
def notifier(sent_emails, fake_twilio):
    return NotificationService(
        account_sid="AC123",
        auth_token="token",
        from_number="+15125550000",
        transport=httpx.MockTransport(fake_twilio.handler),
        email_enabled=True,
        retry_delay=0,
    )


@pytest.fixture
def container(stripe, notifier):
    return build_container(
        zcta_path=ZCTA_TEST_PATH, stripe=stripe, notifier=notifier, use_redis=False, retry_delay=0
    )


@pytest.fixture
def resolver(container):
    return container.resolver


@pytest.fixture
def seed(db):
    """Customer, service catalog and workers around Austin"""
    customer = models.User(
        name="Casey Customer", email="casey@example.com", phone="+15125551111", role="customer"
    )
    worker_a = models.User(
        name="Alex Worker", email="alex@example.com", phone="+15125552222", role="worker"
    )
    worker_b = models.User(
        name="Blair Worker", email="blair@example.com", phone="+15125553333", role="worker"
    )
    inactive = models.User(
        name="Idle Worker", email="idle@example.com", phone="+12105554444", role="worker", is_active=False
    )
    service = models.Service(name="Standard TV Mount", base_price=100.0, duration_minutes=90)
    soundbar = models.Service(name="Soundbar Install", base_price=50.0, duration_minutes=30)
    db.add_all([customer, worker_a, worker_b, inactive, service, soundbar])
    db.flush()

    db.add_all(
        [
            models.WorkerServiceArea(worker_id=worker_a.id, area_name="Downtown", zipcodes=["78701", "78702"]),
            models.WorkerServiceArea(worker_id=worker_b.id, area_name="South Austin", zipcodes=["78745"]),
            models.WorkerServiceArea(worker_id=inactive.id, area_name="North Central", zipcodes=["78216"]),
        ]
    )
    db.commit()
    return {
        "customer": customer,
        "worker_a": worker_a,
        "worker_b": worker_b,
        "inactive": inactive,
        "service": service,
        "soundbar": soundbar,
    }


@pytest.fixture
def make_booking(db, seed):
    """Insert a booking row directly, bypassing staffing"""

    def _make(
        status="pending",
        payment_status="pending",
        zipcode="78701",
        worker=None,
        payment_intent_id=None,
        total_price=100.0,
        created_at=None,
        scheduled_date=None,
        scheduled_start="10:00",
        with_services=True,
    ):
        booking = models.Booking(
            customer_id=seed["customer"].id,
            service_id=seed["service"].id,
            worker_id=worker.id if worker else None,
            scheduled_date=scheduled_date or date.today() + timedelta(days=3),
            scheduled_start=scheduled_start,
            duration_minutes=90,
            address="100 Congress Ave",
            zipcode=zipcode,
            status=status,
            payment_status=payment_status,
            payment_intent_id=payment_intent_id,
            total_price=total_price,
        )
        if created_at is not None:
            booking.created_at = created_at
        db.add(booking)
        db.flush()
        if with_services:
            db.add(
                models.BookingService(
                    booking_id=booking.id,
                    service_id=seed["service"].id,
                    service_name="Standard TV Mount",
                    base_price=total_price,
                    quantity=1,
                )
            )
        db.commit()
        db.refresh(booking)
        return booking

    return _make


@pytest.fixture
def long_ago():
    return datetime.utcnow() - timedelta(hours=6)


@pytest.fixture
def client(session_factory, container, monkeypatch):
    from fastapi.testclient import TestClient

    from tvbooking import config
    from tvbooking.database import get_db
    from tvbooking.main import app

    monkeypatch.setattr(config, "ADMIN_API_TOKEN", "admin-secret")
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", "whsec_test")

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.container = container
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.container = None

