"""
Notification Service
Sends SMS through Twilio, email through Resend and raises admin alerts.
Every send is logged (sms_logs / email_logs) and never breaks the calling flow.
"""

import asyncio
import logging
from typing import Optional

import httpx
import resend
from sqlalchemy.orm import Session

from ..config import (
    ADMIN_ALERT_EMAIL,
    EMAIL_FROM_ADDRESS,
    EMAIL_TIMEOUT_SECONDS,
    NOTIFICATION_MAX_ATTEMPTS,
    RESEND_API_KEY,
    SMS_TIMEOUT_SECONDS,
    TWILIO_ACCOUNT_SID,
    TWILIO_AUTH_TOKEN,
    TWILIO_FROM_NUMBER,
)
from ..email_templates import admin_alert_template
from ..exceptions import ExternalServiceError, ExternalTimeoutError
from ..models import AdminAlert, EmailLog, SmsLog
from ..retry import Succeeded, TimedOut, invoke_with_retry
from ..shared.validators import validate_us_phone

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


class NotificationService:
    """Outbound SMS / email with per-channel timeouts and retries"""

    def __init__(
        self,
        account_sid: Optional[str] = TWILIO_ACCOUNT_SID,
        auth_token: Optional[str] = TWILIO_AUTH_TOKEN,
        from_number: Optional[str] = TWILIO_FROM_NUMBER,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        email_enabled: bool = bool(RESEND_API_KEY),
        retry_delay: float = 0.5,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.transport = transport
        self.email_enabled = email_enabled
        self.retry_delay = retry_delay

        if not (account_sid and auth_token and from_number):
            logger.warning("⚠️ Twilio credentials not set; SMS notifications are disabled")
        if not email_enabled:
            logger.warning("⚠️ RESEND_API_KEY not set; email notifications are disabled")

    def sms_available(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    # ------------------------------------------------------------------
    # SMS
    # ------------------------------------------------------------------

    async def _post_sms(self, to_phone: str, body: str) -> dict:
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=SMS_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    f"{TWILIO_API_URL}/Accounts/{self.account_sid}/Messages.json",
                    auth=(self.account_sid, self.auth_token),
                    data={"To": to_phone, "From": self.from_number, "Body": body},
                )
        except httpx.TimeoutException as e:
            logger.warning(f"⏰ Twilio request timed out: {e}")
            raise ExternalTimeoutError("twilio", SMS_TIMEOUT_SECONDS)
        except httpx.HTTPError as e:
            raise ExternalServiceError("twilio", f"network error: {e}")

        if response.status_code >= 500:
            raise ExternalServiceError("twilio", f"HTTP {response.status_code}", status=response.status_code)
        data = response.json()
        if response.status_code not in (200, 201):
            # 4xx from Twilio is final; report it without retrying
            return {"error": f"[{data.get('code')}] {data.get('message', 'Unknown error')}"}
        return data

    async def send_sms(
        self,
        db: Session,
        to_phone: Optional[str],
        body: str,
        message_type: str,
        booking_id: Optional[str] = None,
    ) -> tuple[bool, Optional[str]]:
        """
        Send one SMS and record it in sms_logs

        Returns:
            Tuple of (success, error_message)
        """
        if not to_phone:
            return False, "No phone number provided"
        try:
            to_phone = validate_us_phone(to_phone)
        except ValueError as e:
            logger.warning(f"⚠️ Invalid phone for {message_type}: {to_phone}")
            return False, str(e)
        if not self.sms_available():
            logger.debug(f"SMS disabled, skipping {message_type} to {to_phone}")
            return False, "SMS disabled"

        logger.info(f"📱 Sending SMS: type={message_type}, to={to_phone}, booking={booking_id}")
        result = await invoke_with_retry(
            lambda: self._post_sms(to_phone, body),
            timeout=SMS_TIMEOUT_SECONDS,
            max_attempts=NOTIFICATION_MAX_ATTEMPTS,
            retry_delay=self.retry_delay,
            name=f"sms:{message_type}",
        )

        error = None
        sid = None
        if isinstance(result, Succeeded):
            error = result.value.get("error")
            sid = result.value.get("sid")
        elif isinstance(result, TimedOut):
            error = "SMS provider timed out"
        else:
            error = str(result.error)

        db.add(
            SmsLog(
                booking_id=booking_id,
                to_phone=to_phone,
                message_type=message_type,
                message_body=body,
                status="failed" if error else "sent",
                twilio_sid=sid,
                error_message=error,
            )
        )
        db.commit()

        if error:
            logger.error(f"❌ SMS {message_type} to {to_phone} failed: {error}")
            return False, error
        logger.info(f"✅ SMS sent: {message_type} to {to_phone} (SID: {sid})")
        return True, None

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    async def _send_resend(self, payload: dict) -> dict:
        try:
            return await asyncio.to_thread(resend.Emails.send, payload)
        except Exception as e:
            raise ExternalServiceError("resend", str(e)) from e

    async def send_email(
        self,
        db: Session,
        to: Optional[str],
        subject: str,
        html: str,
        email_type: str = "general",
        booking_id: Optional[str] = None,
    ) -> bool:
        if not to:
            logger.debug(f"⚠️ No email address for {email_type}")
            return False
        if not self.email_enabled:
            logger.debug(f"Email disabled, skipping {email_type} to {to}")
            return False

        logger.info(f"📧 Sending {email_type} email to {to}")
        result = await invoke_with_retry(
            lambda: self._send_resend(
                {"from": EMAIL_FROM_ADDRESS, "to": [to], "subject": subject, "html": html}
            ),
            timeout=EMAIL_TIMEOUT_SECONDS,
            max_attempts=NOTIFICATION_MAX_ATTEMPTS,
            retry_delay=self.retry_delay,
            name=f"email:{email_type}",
        )

        if isinstance(result, Succeeded):
            response = result.value or {}
            provider_id = response.get("id") if isinstance(response, dict) else None
            db.add(
                EmailLog(
                    booking_id=booking_id,
                    recipient_email=to,
                    email_type=email_type,
                    subject=subject,
                    status="sent",
                    provider_id=provider_id,
                )
            )
            db.commit()
            logger.info(f"✅ {email_type} email sent to {to}")
            return True

        error = "Email provider timed out" if isinstance(result, TimedOut) else str(result.error)
        db.add(
            EmailLog(
                booking_id=booking_id,
                recipient_email=to,
                email_type=email_type,
                subject=subject,
                status="failed",
                error_message=error,
            )
        )
        db.commit()
        logger.error(f"❌ Failed to send {email_type} email to {to}: {error}")
        return False

    # ------------------------------------------------------------------
    # Admin alerts
    # ------------------------------------------------------------------

    async def raise_admin_alert(
        self,
        db: Session,
        alert_type: str,
        message: str,
        severity: str = "medium",
        booking_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AdminAlert:
        alert = AdminAlert(
            alert_type=alert_type,
            severity=severity,
            booking_id=booking_id,
            message=message,
            details=details or {},
        )
        db.add(alert)
        db.commit()
        logger.warning(f"🚨 Admin alert [{severity}] {alert_type}: {message} (booking={booking_id})")

        if ADMIN_ALERT_EMAIL and severity == "high":
            await self.send_email(
                db,
                ADMIN_ALERT_EMAIL,
                f"[Admin alert] {alert_type}",
                admin_alert_template(alert_type, message, booking_id, details or {}),
                email_type="admin_alert",
                booking_id=booking_id,
            )
        return alert

    def has_sent_email(self, db: Session, booking_id: str, recipient: str, email_type: str) -> bool:
        return (
            db.query(EmailLog)
            .filter(
                EmailLog.booking_id == booking_id,
                EmailLog.recipient_email == recipient,
                EmailLog.email_type == email_type,
                EmailLog.status == "sent",
            )
            .first()
            is not None
        )
