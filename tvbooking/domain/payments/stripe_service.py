"""Stripe service - PaymentIntent API calls over httpx"""

import logging
from typing import Optional

import httpx

from ...config import PAYMENT_INTENT_TIMEOUT_SECONDS, STRIPE_API_URL, STRIPE_SECRET_KEY
from ...exceptions import (
    ExternalServiceError,
    ExternalTimeoutError,
    NotFoundError,
    PaymentDeclinedError,
    StateConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)

UNEXPECTED_STATE_CODE = "payment_intent_unexpected_state"
CARD_ERROR_TYPE = "card_error"


def _flatten(data: dict, prefix: str = "") -> dict:
    """Encode nested dicts/lists the way Stripe expects form fields (metadata[key]=value)"""
    flat = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    flat.update(_flatten(item, f"{name}[{i}]"))
                else:
                    flat[f"{name}[{i}]"] = str(item)
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


class StripeService:
    """Thin wrapper over the Stripe REST API for manual-capture PaymentIntents"""

    def __init__(
        self,
        api_key: Optional[str] = STRIPE_SECRET_KEY,
        base_url: str = STRIPE_API_URL,
        timeout: float = PAYMENT_INTENT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY not set; payment endpoints will fail until configured")

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        params: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        if not self.api_key:
            raise ExternalServiceError("stripe", "Stripe client not configured")

        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    data=_flatten(data) if data else None,
                    params=_flatten(params) if params else None,
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            logger.warning(f"⏰ Stripe {method} {path} timed out: {e}")
            raise ExternalTimeoutError("stripe", self.timeout)
        except httpx.HTTPError as e:
            raise ExternalServiceError("stripe", f"network error: {e}")

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"⚠️ Stripe {method} {path} returned {response.status_code}")
            raise ExternalServiceError(
                "stripe", f"HTTP {response.status_code}", status=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            raise ExternalServiceError("stripe", "invalid JSON response", status=response.status_code)

        if response.status_code >= 400:
            error = body.get("error") or {}
            code = error.get("code")
            message = error.get("message") or "Stripe request failed"
            logger.error(f"❌ Stripe {method} {path} failed [{code}]: {message}")
            if code == UNEXPECTED_STATE_CODE:
                intent = error.get("payment_intent") or {}
                raise StateConflictError(message, current_state=intent.get("status"))
            if error.get("type") == CARD_ERROR_TYPE:
                raise PaymentDeclinedError(message, code=code or error.get("decline_code"))
            if response.status_code == 404:
                raise NotFoundError(message)
            if response.status_code in (401, 403):
                # Bad key or account permissions; nothing the customer did
                raise ExternalServiceError("stripe", message, status=response.status_code)
            raise ValidationError(message, public_message="The payment request was rejected. Please try again.")
        return body

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        payment_method: Optional[str] = None,
        metadata: Optional[dict] = None,
        customer: Optional[str] = None,
        confirm: bool = True,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        payload = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "capture_method": "manual",
            "metadata": metadata or {},
            "customer": customer,
        }
        if payment_method:
            payload["payment_method"] = payment_method
            payload["confirm"] = confirm
            # Card-only confirmation server side; redirects are not supported
            payload["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}
        intent = await self._request(
            "POST", "/payment_intents", data=payload, idempotency_key=idempotency_key
        )
        logger.info(f"✅ Created PaymentIntent {intent.get('id')} status={intent.get('status')}")
        return intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        return await self._request("GET", f"/payment_intents/{payment_intent_id}")

    async def capture_payment_intent(
        self,
        payment_intent_id: str,
        amount_to_capture: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        data = {"amount_to_capture": amount_to_capture} if amount_to_capture else None
        intent = await self._request(
            "POST",
            f"/payment_intents/{payment_intent_id}/capture",
            data=data,
            idempotency_key=idempotency_key,
        )
        logger.info(f"✅ Captured PaymentIntent {payment_intent_id}: {intent.get('amount_received')}")
        return intent

    async def cancel_payment_intent(
        self, payment_intent_id: str, cancellation_reason: Optional[str] = None
    ) -> dict:
        data = {"cancellation_reason": cancellation_reason} if cancellation_reason else None
        intent = await self._request(
            "POST", f"/payment_intents/{payment_intent_id}/cancel", data=data
        )
        logger.info(f"✅ Canceled PaymentIntent {payment_intent_id}")
        return intent

    async def increment_authorization(
        self, payment_intent_id: str, amount_cents: int, idempotency_key: Optional[str] = None
    ) -> dict:
        """amount_cents is the new total authorized amount"""
        return await self._request(
            "POST",
            f"/payment_intents/{payment_intent_id}/increment_authorization",
            data={"amount": amount_cents},
            idempotency_key=idempotency_key,
        )

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        refund = await self._request(
            "POST",
            "/refunds",
            data={"payment_intent": payment_intent_id, "amount": amount_cents},
            idempotency_key=idempotency_key,
        )
        logger.info(f"✅ Refund {refund.get('id')} created for {payment_intent_id}")
        return refund

    async def list_charges(
        self, created_gte: int, starting_after: Optional[str] = None, limit: int = 100
    ) -> dict:
        params = {"limit": limit, "created": {"gte": created_gte}, "starting_after": starting_after}
        return await self._request("GET", "/charges", params=params)


stripe_service = StripeService()
