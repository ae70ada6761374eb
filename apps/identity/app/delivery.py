from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from ride_shared import mask_phone

from .errors import DeliveryError, DeliveryRateLimited

logger = logging.getLogger("identity.sms")
fallback_logger = logging.getLogger("identity.otp.fallback")


@dataclass(frozen=True)
class DeliveryReceipt:
    expires_in: int
    provider_message_id: Optional[str] = None


class DeliveryGateway(Protocol):
    name: str

    def send(self, phone: str, code: str, ttl_secs: int) -> DeliveryReceipt:
        ...


def render_message(template: str, code: str, ttl_secs: int) -> str:
    return template.format(code=code, minutes=max(1, ttl_secs // 60), seconds=ttl_secs)


def _retry_after(res: httpx.Response) -> Optional[int]:
    raw = res.headers.get("Retry-After")
    if raw and raw.strip().isdigit():
        return int(raw.strip())
    return None


@dataclass
class SmsGateway:
    url: str
    auth_token: str
    sender_name: Optional[str] = None
    template: str = "Your verification code is {code}"
    timeout: float = 5.0
    transport: Optional[httpx.BaseTransport] = None

    name = "sms"

    def __post_init__(self) -> None:
        if not self.url or not self.url.startswith(("http://", "https://")):
            raise ValueError("OTP_SMS_HTTP_URL must be an http(s) URL")
        if not self.auth_token:
            raise ValueError("OTP_SMS_HTTP_AUTH_TOKEN must be configured for the http SMS provider")
        if self.timeout <= 0:
            raise ValueError("SMS timeout must be positive")

    def send(self, phone: str, code: str, ttl_secs: int) -> DeliveryReceipt:
        payload = {
            "to": phone,
            "message": render_message(self.template, code, ttl_secs),
        }
        if self.sender_name:
            payload["sender"] = self.sender_name
        headers = {"Authorization": f"Bearer {self.auth_token}"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                res = client.post(self.url, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning("SMS provider timed out after %.1fs for %s", self.timeout, mask_phone(phone))
            raise DeliveryError("SMS provider timed out") from None
        except httpx.HTTPError as exc:
            logger.warning("SMS provider unreachable for %s: %s", mask_phone(phone), type(exc).__name__)
            raise DeliveryError("SMS provider unreachable") from None
        if res.status_code == 429:
            raise DeliveryRateLimited(retry_after=_retry_after(res))
        if res.status_code >= 400:
            logger.warning("SMS provider rejected message for %s (%s)", mask_phone(phone), res.status_code)
            raise DeliveryError(f"SMS provider returned {res.status_code}")
        message_id = None
        try:
            body = res.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message_id = body.get("id") or body.get("message_id")
        logger.info("OTP sent to %s via sms", mask_phone(phone))
        return DeliveryReceipt(expires_in=ttl_secs, provider_message_id=message_id)


class LoggingFallbackGateway:
    """Writes the code to the operational log instead of sending it.

    Development and provider-outage use only; production refuses it unless
    explicitly allowed.
    """

    name = "log"

    def send(self, phone: str, code: str, ttl_secs: int) -> DeliveryReceipt:
        fallback_logger.warning("[OTP FALLBACK] to=%s code=%s ttl=%ss", phone, code, ttl_secs)
        return DeliveryReceipt(expires_in=ttl_secs)


def build_delivery_gateway(settings) -> DeliveryGateway:
    """Pick the delivery channel once, at startup."""
    mode = (settings.OTP_SMS_PROVIDER or "log").lower()
    if mode == "http":
        try:
            return SmsGateway(
                url=settings.OTP_SMS_HTTP_URL,
                auth_token=settings.OTP_SMS_HTTP_AUTH_TOKEN,
                sender_name=settings.OTP_SMS_SENDER_NAME or None,
                template=settings.OTP_SMS_TEMPLATE,
                timeout=settings.OTP_SMS_TIMEOUT_SECS,
            )
        except ValueError as exc:
            if not settings.OTP_ALLOW_LOG_FALLBACK:
                raise RuntimeError(f"SMS gateway unusable and log fallback disabled: {exc}") from exc
            logger.warning("SMS gateway unusable (%s); OTP codes will be written to the log", exc)
            return LoggingFallbackGateway()
    if mode == "log":
        if not settings.OTP_ALLOW_LOG_FALLBACK:
            raise RuntimeError("OTP_SMS_PROVIDER=log requires OTP_ALLOW_LOG_FALLBACK")
        return LoggingFallbackGateway()
    raise RuntimeError(f"Unsupported OTP_SMS_PROVIDER '{mode}'")


def build_send_failure_fallback(settings, primary: DeliveryGateway) -> Optional[DeliveryGateway]:
    if not settings.OTP_FALLBACK_ON_SEND_FAILURE or isinstance(primary, LoggingFallbackGateway):
        return None
    if not settings.OTP_ALLOW_LOG_FALLBACK:
        return None
    return LoggingFallbackGateway()
