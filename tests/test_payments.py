import httpx
import pytest

from tvbooking import models
from tvbooking.domain.payments.repository import PaymentRepository
from tvbooking.domain.payments.service import PaymentService
from tvbooking.domain.payments.stripe_service import StripeService
from tvbooking.exceptions import (
    ExternalServiceError,
    ExternalTimeoutError,
    NotFoundError,
    PaymentDeclinedError,
    StateConflictError,
    ValidationError,
)


@pytest.fixture
def payments(db, stripe, notifier):
    return PaymentService(db, stripe=stripe, notifier=notifier, retry_delay=0)


def ledger(db, booking_id):
    return [(t.transaction_type, t.status, t.amount) for t in PaymentRepository.list_for_booking(db, booking_id)]


# --------------------------------------------------------------------
# Authorization
# --------------------------------------------------------------------
async def test_authorize_then_capture(db, seed, payments, make_booking, fake_stripe):
    booking = make_booking()

    auth = await payments.create_authorization(booking.id, 100.0, payment_method="pm_card_visa")
    assert auth["success"]
    assert auth["status"] == "requires_capture"
    db.refresh(booking)
    assert (booking.status, booking.payment_status) == ("confirmed", "authorized")
    assert booking.payment_intent_id == auth["payment_intent_id"]
    assert ledger(db, booking.id) == [("authorization", "authorized", 100.0)]
    assert fake_stripe.intents[auth["payment_intent_id"]]["metadata"] == {"booking_id": booking.id}

    capture = await payments.capture(booking.id)
    assert capture == {"success": True, "amount_captured": 100.0, "payment_intent_id": auth["payment_intent_id"]}
    db.refresh(booking)
    assert booking.payment_status == "captured"
    assert sorted(ledger(db, booking.id)) == [
        ("authorization", "completed", 100.0),
        ("capture", "completed", 100.0),
    ]


async def test_capture_twice_is_a_no_op(db, seed, payments, make_booking, fake_stripe):
    intent = fake_stripe.add_intent("requires_capture")
    booking = make_booking(status="confirmed", payment_status="authorized", payment_intent_id=intent["id"])

    await payments.capture(booking.id)
    calls = len(fake_stripe.requests)
    again = await payments.capture(booking.id)

    assert again["already_captured"]
    assert again["amount_captured"] == 100.0
    assert len(fake_stripe.requests) == calls


async def test_capture_after_stripe_already_captured(db, seed, payments, make_booking, fake_stripe):
    # captured from the dashboard, local row still says authorized
    intent = fake_stripe.add_intent("succeeded")
    booking = make_booking(status="confirmed", payment_status="authorized", payment_intent_id=intent["id"])

    result = await payments.capture(booking.id)
    assert result["success"]
    assert result["already_captured"]
    db.refresh(booking)
    assert booking.payment_status == "captured"


async def test_capture_of_cancelled_hold_is_expired(db, seed, payments, make_booking, fake_stripe):
    intent = fake_stripe.add_intent("canceled")
    booking = make_booking(status="confirmed", payment_status="authorized", payment_intent_id=intent["id"])

    with pytest.raises(StateConflictError) as exc:
        await payments.capture(booking.id)
    assert exc.value.public_message == "Payment authorization has expired"


async def test_capture_requires_authorized_payment(db, seed, payments, make_booking):
    booking = make_booking()
    with pytest.raises(StateConflictError):
        await payments.capture(booking.id)


async def test_partial_capture_bounds(db, seed, payments, make_booking, fake_stripe):
    intent = fake_stripe.add_intent("requires_capture")
    booking = make_booking(status="confirmed", payment_status="authorized", payment_intent_id=intent["id"])

    with pytest.raises(ValidationError):
        await payments.capture(booking.id, amount=150.0)
    result = await payments.capture(booking.id, amount=80.0)
    assert result["amount_captured"] == 80.0


async def test_declined_card_marks_booking_failed(db, seed, payments, make_booking):
    booking = make_booking()
    result = await payments.create_authorization(booking.id, 100.0, payment_method="pm_card_declined")

    assert result == {"success": False, "error": "Your card was declined."}
    db.refresh(booking)
    assert (booking.status, booking.payment_status) == ("failed", "failed")
    assert ledger(db, booking.id) == [("authorization", "failed", 100.0)]

    # the customer may try another card
    retry = await payments.create_authorization(booking.id, 100.0, payment_method="pm_card_visa")
    assert retry["success"]
    db.refresh(booking)
    assert booking.status == "confirmed"


async def test_stripe_timeout_leaves_booking_pending(db, seed, payments, make_booking, fake_stripe):
    booking = make_booking()
    fake_stripe.timeout_next = 3

    result = await payments.create_authorization(booking.id, 100.0, payment_method="pm_card_visa")
    assert result["success"] is False
    assert result["pending"] is True
    assert result["error"] == ExternalTimeoutError.public_message
    assert len(fake_stripe.requests) == 3
    db.refresh(booking)
    assert (booking.status, booking.payment_status) == ("payment_pending", "pending")
    assert ledger(db, booking.id) == []


async def test_bad_api_key_does_not_fail_booking(db, seed, make_booking):
    def unauthorized(request):
        return httpx.Response(
            401, json={"error": {"type": "invalid_request_error", "message": "Invalid API Key provided"}}
        )

    stripe = StripeService(
        api_key="sk_test_revoked", base_url="https://api.stripe.test/v1", transport=httpx.MockTransport(unauthorized)
    )
    booking = make_booking()
    result = await PaymentService(db, stripe=stripe, retry_delay=0).create_authorization(
        booking.id, 100.0, payment_method="pm_card_visa"
    )

    assert result == {"success": False, "error": ExternalServiceError.public_message}
    db.refresh(booking)
    assert (booking.status, booking.payment_status) == ("payment_pending", "pending")
    assert ledger(db, booking.id) == []


async def test_stripe_error_mapping(stripe, fake_stripe):
    with pytest.raises(NotFoundError):
        await stripe.retrieve_payment_intent("pi_missing")
    with pytest.raises(PaymentDeclinedError) as exc:
        await stripe.create_payment_intent(1000, "usd", payment_method="pm_card_declined")
    assert exc.value.code == "card_declined"
    fake_stripe.timeout_next = 1
    with pytest.raises(ExternalTimeoutError):
        await stripe.retrieve_payment_intent("pi_missing")


async def test_transient_stripe_errors_are_retried(db, seed, payments, make_booking, fake_stripe):
    booking = make_booking()
    fake_stripe.fail_next = 2
    result = await payments.create_authorization(booking.id, 100.0, payment_method="pm_card_visa")
    assert result["success"]
    assert len(fake_stripe.intents) == 1
    # every attempt reused one idempotency key
    keys = {r.headers.get("Idempotency-Key") for r in fake_stripe.requests}
    assert len(keys) == 1


async def test_authorize_is_idempotent_for_held_booking(db, seed, payments, make_booking, fake_stripe):
    intent = fake_stripe.add_intent("requires_capture")
    booking = make_booking(status="confirmed", payment_status="authorized", payment_intent_id=intent["id"])

    result = await payments.create_authorization(booking.id, 100.0, payment_method="pm_card_visa")
    assert result["already_authorized"]
    assert result["payment_intent_id"] == intent["id"]
    assert fake_stripe.requests == []


async def test_pre_booking_hold(db, payments):
    result = await payments.create_authorization(None, 49.99, currency="usd")
    assert result["success"]
    assert result["status"] == "requires_payment_method"
    txn = PaymentRepository.get_primary_transaction(db, result["payment_intent_id"])
    assert txn.booking_id is None
    assert txn.status == "pending"
    assert txn.amount == 49.99


@pytest.mark.parametrize("booking_id", ["test-booking-id", "temp-123", "not-a-uuid"])
async def test_placeholder_booking_ids_never_reach_stripe(payments, fake_stripe, booking_id):
    with pytest.raises(ValidationError):
        await payments.create_authorization(booking_id, 100.0)
    assert fake_stripe.requests == []


async def test_invalid_amount_rejected(payments):
    with pytest.raises(ValidationError):
        await payments.create_authorization(None, 0)


# --------------------------------------------------------------------
# Increment
# --------------------------------------------------------------------
async def test_increment_raises_hold_and_emails_customer(db, seed, payments, make_booking, fake_stripe, sent_emails):
    intent = fake_stripe.add_intent("requires_capture")
    booking = make_booking(status="confirmed", payment_status="authorized", payment_intent_id=intent["id"])

    result = await payments.increment(booking.id, 50.0, ["Soundbar Install"])
    assert result == {"success": True, "new_total": 150.0, "added_amount": 50.0, "notification_sent": True}
    db.refresh(booking)
    assert booking.total_price == 150.0
    assert ("increment", "authorized", 50.0) in ledger(db, booking.id)
    assert sent_emails[0]["to"] == ["casey@example.com"]


async def test_increment_requires_hold(db, seed, payments, make_booking):
    booking = make_booking(status="confirmed", payment_status="captured")
    with pytest.raises(StateConflictError):
        await payments.increment(booking.id, 10.0)


# --------------------------------------------------------------------
# Cancel / refund
# --------------------------------------------------------------------
async def test_cancel_releases_hold(db, seed, payments, make_booking, fake_stripe):
    intent = fake_stripe.add_intent("requires_capture")
    booking = make_booking(status="confirmed", payment_status="authorized", payment_intent_id=intent["id"])
    PaymentRepository.create_transaction(db, booking.id, intent["id"], 100.0, status="authorized")
    db.commit()

    result = await payments.cancel_authorization(booking.id)
    assert result["success"]
    assert result["canceled_intent"]
    assert not result["refunded"]
    assert fake_stripe.intents[intent["id"]]["status"] == "canceled"
    db.refresh(booking)
    assert (booking.status, booking.payment_status) == ("cancelled", "cancelled")
    assert ledger(db, booking.id) == [("authorization", "cancelled", 100.0)]

    again = await payments.cancel_authorization(booking.id)
    assert again["message"] == "Booking already cancelled"


async def test_cancel_after_capture_refunds(db, seed, payments, make_booking, fake_stripe):
    intent = fake_stripe.add_intent("succeeded")
    booking = make_booking(status="confirmed", payment_status="captured", payment_intent_id=intent["id"])

    result = await payments.cancel_authorization(booking.id)
    assert result["refunded"]
    assert fake_stripe.refunds[0]["amount"] == 10000
    db.refresh(booking)
    assert (booking.status, booking.payment_status) == ("cancelled", "refunded")


async def test_refund_requires_capture(db, seed, payments, make_booking, fake_stripe):
    intent = fake_stripe.add_intent("requires_capture")
    booking = make_booking(status="confirmed", payment_status="authorized", payment_intent_id=intent["id"])
    with pytest.raises(StateConflictError):
        await payments.refund(booking.id)


async def test_partial_refund(db, seed, payments, make_booking, fake_stripe):
    intent = fake_stripe.add_intent("succeeded")
    booking = make_booking(status="completed", payment_status="captured", payment_intent_id=intent["id"])

    result = await payments.refund(booking.id, amount=25.0)
    assert result["amount_refunded"] == 25.0
    db.refresh(booking)
    assert booking.payment_status == "refunded"
    assert (await payments.refund(booking.id))["already_refunded"]


async def test_refund_retry_reuses_idempotency_key(db, seed, payments, make_booking, fake_stripe):
    intent = fake_stripe.add_intent("succeeded")
    booking = make_booking(status="completed", payment_status="captured", payment_intent_id=intent["id"])
    # the refund lands but the response is lost
    fake_stripe.fail_after_write = 1

    result = await payments.refund(booking.id, amount=30.0)
    assert result["amount_refunded"] == 30.0
    assert [r["amount"] for r in fake_stripe.refunds] == [3000]

    sent = fake_stripe.requests_to("/refunds")
    assert len(sent) == 2
    keys = {r.headers.get("Idempotency-Key") for r in sent}
    assert len(keys) == 1
    assert None not in keys


async def test_release_of_missing_intent_counts_as_released(payments, fake_stripe):
    assert await payments.release_intent("pi_gone") == (False, None)


# --------------------------------------------------------------------
# HTTP surface
# --------------------------------------------------------------------
def test_payment_endpoints(client, seed, make_booking, fake_stripe):
    booking = make_booking()

    response = client.post(
        "/payments/authorize", json={"booking_id": booking.id, "amount": 100, "payment_method": "pm_card_visa"}
    )
    assert response.status_code == 200
    assert response.json()["success"]

    response = client.post("/payments/capture", json={"booking_id": booking.id})
    assert response.json()["amount_captured"] == 100.0

    response = client.post("/payments/refund", json={"booking_id": booking.id})
    assert response.status_code == 403

    response = client.post(
        "/payments/refund", json={"booking_id": booking.id}, headers={"X-Admin-Token": "admin-secret"}
    )
    assert response.json()["amount_refunded"] == 100.0


def test_capture_conflict_maps_to_409(client, seed, make_booking):
    booking = make_booking()
    response = client.post("/payments/capture", json={"booking_id": booking.id})
    assert response.status_code == 409
    assert response.json()["success"] is False


def test_placeholder_booking_is_400(client):
    response = client.post("/payments/authorize", json={"booking_id": "test-booking-id", "amount": 10})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid booking reference"


def test_audit_log_records_payment_steps(client, seed, make_booking, db):
    booking = make_booking()
    client.post("/payments/authorize", json={"booking_id": booking.id, "amount": 100, "payment_method": "pm_card_visa"})
    client.post("/payments/capture", json={"booking_id": booking.id})

    operations = [
        entry.operation
        for entry in db.query(models.BookingAuditLog).filter_by(booking_id=booking.id).order_by(models.BookingAuditLog.id)
    ]
    assert operations == ["payment_authorized", "payment_captured"]
