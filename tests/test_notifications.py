import httpx
import resend

from tvbooking import models
from tvbooking.services.notification_service import NotificationService


def twilio_service(handler):
    return NotificationService(
        account_sid="AC123",
        auth_token="token",
        from_number="+15125550000",
        transport=httpx.MockTransport(handler),
        email_enabled=True,
        retry_delay=0,
    )


async def test_sms_is_sent_and_logged(db, notifier, fake_twilio):
    ok, error = await notifier.send_sms(db, "(512) 555-2222", "New job", "worker_assignment", booking_id="b1")
    assert (ok, error) == (True, None)
    assert fake_twilio.messages[0]["To"] == "+15125552222"

    log = db.query(models.SmsLog).one()
    assert (log.status, log.twilio_sid, log.booking_id) == ("sent", "SM0001", "b1")


async def test_invalid_phone_is_not_sent(db, notifier, fake_twilio):
    ok, error = await notifier.send_sms(db, "555-12", "hi", "test")
    assert not ok
    assert "10 digits" in error
    assert fake_twilio.messages == []


async def test_sms_disabled_without_credentials(db):
    service = NotificationService(account_sid=None, auth_token=None, from_number=None, email_enabled=False)
    assert await service.send_sms(db, "5125552222", "hi", "test") == (False, "SMS disabled")


async def test_twilio_outage_is_retried_then_logged(db):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, json={"message": "unavailable"})

    ok, error = await twilio_service(handler).send_sms(db, "5125552222", "hi", "test")
    assert not ok
    assert len(calls) == 2
    log = db.query(models.SmsLog).one()
    assert log.status == "failed"


async def test_twilio_rejection_is_not_retried(db):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

    ok, error = await twilio_service(handler).send_sms(db, "5125552222", "hi", "test")
    assert not ok
    assert error == "[21211] Invalid 'To' Phone Number"
    assert len(calls) == 1


async def test_email_log_drives_has_sent(db, notifier, sent_emails):
    assert not notifier.has_sent_email(db, "b1", "casey@example.com", "booking_confirmation")
    assert await notifier.send_email(
        db, "casey@example.com", "Confirmed", "<p>hi</p>", email_type="booking_confirmation", booking_id="b1"
    )
    assert sent_emails[0]["subject"] == "Confirmed"
    assert notifier.has_sent_email(db, "b1", "casey@example.com", "booking_confirmation")


async def test_failed_email_is_logged_not_raised(db, notifier, monkeypatch):
    def boom(payload):
        raise RuntimeError("resend down")

    monkeypatch.setattr(resend.Emails, "send", boom)
    assert not await notifier.send_email(db, "casey@example.com", "Confirmed", "<p>hi</p>", booking_id="b1")
    log = db.query(models.EmailLog).one()
    assert log.status == "failed"
    assert "resend down" in log.error_message
    assert not notifier.has_sent_email(db, "b1", "casey@example.com", "general")


async def test_admin_alert_is_stored(db, notifier):
    alert = await notifier.raise_admin_alert(db, "no_coverage", "Nobody covers 78216", booking_id="b1")
    assert alert.id is not None
    assert db.query(models.AdminAlert).one().alert_type == "no_coverage"


async def test_twilio_timeout_is_logged_as_timeout(db):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    ok, error = await twilio_service(handler).send_sms(db, "5125552222", "hi", "test")
    assert (ok, error) == (False, "SMS provider timed out")
    assert len(calls) == 2
    assert db.query(models.SmsLog).one().error_message == "SMS provider timed out"
