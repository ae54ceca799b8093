from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .delivery import (
    DeliveryResult,
    PermanentDeliveryError,
    TransientDeliveryError,
    mask_code,
    mask_codes_in_text,
    send_with_retry,
)
from .env_loader import ensure_loaded as _ensure_env_loaded
from .phone_utils import mask_phone, normalize_phone_ph

logger = logging.getLogger("wallet_shared.sms")

DEFAULT_TEMPLATE = (
    "Your verification code is: {otp}. This code will expire in 5 minutes. "
    "Do not share this code with anyone."
)
SEMAPHORE_BASE_URL = "https://api.semaphore.co/api/v4"


class SmsBackend(Protocol):
    def send_code(self, phone: str, code: str) -> DeliveryResult:  # pragma: no cover - interface
        ...

    def send(self, phone: str, message: str) -> DeliveryResult:  # pragma: no cover - interface
        ...


def _render(template: str, code: str) -> str:
    try:
        return template.format(otp=code)
    except (KeyError, IndexError, ValueError):
        return f"Your verification code is {code}"


@dataclass
class LogBackend:
    """Development backend: nothing leaves the process, codes are masked in logs."""

    template: str = DEFAULT_TEMPLATE

    def send_code(self, phone: str, code: str) -> DeliveryResult:
        self.send(phone, _render(self.template, code))
        return DeliveryResult(message_id=f"log-{uuid.uuid4().hex}", code=code)

    def send(self, phone: str, message: str) -> DeliveryResult:
        logger.debug("SMS log backend send to=%s msg=%s", mask_phone(phone), mask_codes_in_text(message))
        return DeliveryResult(message_id=f"log-{uuid.uuid4().hex}")


def _transport_error(exc: httpx.HTTPError, provider: str) -> TransientDeliveryError:
    return TransientDeliveryError(f"{provider} request failed: {exc}", reason="network", provider=provider)


@dataclass
class HttpBackend:
    """Generic JSON-over-HTTP SMS gateway."""

    url: str
    auth_token: Optional[str] = None
    sender_name: Optional[str] = None
    template: str = DEFAULT_TEMPLATE
    timeout: float = 5.0

    def send_code(self, phone: str, code: str) -> DeliveryResult:
        result = self.send(phone, _render(self.template, code))
        return DeliveryResult(message_id=result.message_id, code=code)

    def send(self, phone: str, message: str) -> DeliveryResult:
        if not (self.url or "").strip():
            raise PermanentDeliveryError("SMS URL must be configured for HTTP provider", reason="misconfigured", provider="http")
        payload = {"to": normalize_phone_ph(phone) or phone, "message": message}
        if self.sender_name:
            payload["sender"] = self.sender_name
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        def _call() -> DeliveryResult:
            try:
                res = httpx.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            except httpx.HTTPError as exc:
                raise _transport_error(exc, "http") from exc
            if res.status_code >= 500 or res.status_code == 429:
                raise TransientDeliveryError(f"SMS gateway returned {res.status_code}", provider="http")
            if res.status_code >= 400:
                reason = "invalid_recipient" if res.status_code in (400, 422) else "rejected"
                raise PermanentDeliveryError(f"SMS gateway rejected message ({res.status_code})", reason=reason, provider="http")
            try:
                body = res.json()
            except ValueError:
                body = {}
            message_id = str(body.get("message_id") or body.get("id") or uuid.uuid4().hex) if isinstance(body, dict) else uuid.uuid4().hex
            return DeliveryResult(message_id=message_id)

        return send_with_retry(_call, backend_name="http")


@dataclass
class SemaphoreBackend:
    """Semaphore (semaphore.co) OTP endpoint.

    The provider substitutes {otp} in the message. We always pass our own code,
    but the store records whatever code the provider reports back.
    """

    api_key: str
    sender_name: str = ""
    base_url: str = SEMAPHORE_BASE_URL
    template: str = DEFAULT_TEMPLATE
    timeout: float = 15.0
    client: Optional[httpx.Client] = None

    def _post(self, path: str, data: dict) -> list:
        if not self.api_key:
            raise PermanentDeliveryError("SMS service authentication failed", reason="auth", provider="semaphore")
        url = f"{self.base_url.rstrip('/')}{path}"
        try:
            if self.client is not None:
                res = self.client.post(url, json=data, timeout=self.timeout)
            else:
                res = httpx.post(url, json=data, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise _transport_error(exc, "semaphore") from exc
        if res.status_code >= 400:
            raise _classify_semaphore_error(res)
        try:
            body = res.json()
        except ValueError:
            raise TransientDeliveryError("SMS service returned an unreadable response", provider="semaphore") from None
        if isinstance(body, dict):
            body = [body]
        if not body:
            raise TransientDeliveryError("SMS service returned an empty response", provider="semaphore")
        return body

    def send_code(self, phone: str, code: str) -> DeliveryResult:
        data = {
            "apikey": self.api_key,
            "number": normalize_phone_ph(phone) or phone,
            "message": self.template,
            "sendername": self.sender_name,
            "code": code,
        }

        def _call() -> DeliveryResult:
            first = self._post("/otp", data)[0]
            provider_code = str(first.get("code") or code)
            return DeliveryResult(message_id=str(first.get("message_id", "")), code=provider_code)

        result = send_with_retry(_call, backend_name="semaphore")
        logger.info(
            "OTP sent via semaphore to=%s message_id=%s code=%s",
            mask_phone(phone),
            result.message_id,
            mask_code(result.code or ""),
        )
        return result

    def send(self, phone: str, message: str) -> DeliveryResult:
        data = {
            "apikey": self.api_key,
            "number": normalize_phone_ph(phone) or phone,
            "message": message,
            "sendername": self.sender_name,
        }

        def _call() -> DeliveryResult:
            first = self._post("/messages", data)[0]
            return DeliveryResult(message_id=str(first.get("message_id", "")))

        return send_with_retry(_call, backend_name="semaphore")


def _classify_semaphore_error(res: httpx.Response):
    try:
        body = res.json()
    except ValueError:
        body = {}
    if isinstance(body, list):
        body = body[0] if body else {}
    message = str((body or {}).get("message") or res.text or "")
    lowered = message.lower()
    if "invalid number" in lowered:
        return PermanentDeliveryError("Invalid Philippines phone number format", reason="invalid_recipient", provider="semaphore")
    if "invalid api key" in lowered or res.status_code in (401, 403):
        return PermanentDeliveryError("SMS service authentication failed", reason="auth", provider="semaphore")
    if "insufficient balance" in lowered:
        return PermanentDeliveryError(
            "SMS service temporarily unavailable - insufficient balance", reason="insufficient_balance", provider="semaphore"
        )
    if "rate limit" in lowered or res.status_code == 429 or res.status_code >= 500:
        return TransientDeliveryError(f"SMS service error: {message or res.status_code}", provider="semaphore")
    return PermanentDeliveryError(f"SMS service error: {message or 'Unknown error'}", reason="rejected", provider="semaphore")


def resolve_backend(provider: Optional[str] = None) -> SmsBackend:
    """Build the SMS backend named by OTP_SMS_PROVIDER (log|http|semaphore)."""
    _ensure_env_loaded()
    provider = (provider or os.getenv("OTP_SMS_PROVIDER", "log") or "log").lower()
    template = os.getenv("OTP_SMS_TEMPLATE", "") or DEFAULT_TEMPLATE
    if provider == "semaphore":
        return SemaphoreBackend(
            api_key=os.getenv("SEMAPHORE_API_KEY", ""),
            sender_name=os.getenv("SEMAPHORE_SENDER_NAME", ""),
            base_url=os.getenv("SEMAPHORE_BASE_URL", SEMAPHORE_BASE_URL),
            template=template,
        )
    if provider == "http":
        return HttpBackend(
            url=os.getenv("OTP_SMS_HTTP_URL", ""),
            auth_token=os.getenv("OTP_SMS_HTTP_AUTH_TOKEN", "") or None,
            sender_name=os.getenv("OTP_SMS_SENDER_NAME", "") or None,
            template=template,
        )
    if provider != "log":
        logger.warning("Unknown OTP_SMS_PROVIDER %r, falling back to log backend", provider)
    return LogBackend(template=template)
