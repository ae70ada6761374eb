"""Error taxonomy of the identity service and its HTTP rendering.

Every error carries its HTTP status and a stable machine-readable code. The
JSON body uses the same envelope as the platform rate limiter::

    {"error": {"code": "...", "message": "...", "details": {...}}}
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

logger = logging.getLogger("identity.errors")


class IdentityError(Exception):
    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = {k: v for k, v in details.items() if v is not None}

    @property
    def retry_after(self) -> int | None:
        return self.details.get("retry_after")


class ValidationError(IdentityError):
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid input"


class RateLimited(IdentityError):
    status_code = 429
    code = "otp_rate_limited"
    default_message = "Too many OTP requests"


class NotFound(IdentityError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class Expired(IdentityError):
    status_code = 400
    code = "otp_expired"
    default_message = "OTP has expired. Please request a new one."


class InvalidCode(IdentityError):
    status_code = 400
    code = "otp_invalid"
    default_message = "Invalid OTP. Please check and try again."


class Locked(IdentityError):
    status_code = 429
    code = "otp_locked"
    default_message = "Too many failed attempts. Verification is temporarily locked."


class DeliveryError(IdentityError):
    status_code = 500
    code = "otp_delivery_failed"
    default_message = "Failed to send OTP. Please try again later."


class DeliveryRateLimited(DeliveryError):
    """The SMS provider itself refused the message for being too frequent."""

    code = "otp_provider_rate_limited"
    default_message = "SMS provider is throttling requests"


class InternalError(IdentityError):
    pass


class Unauthenticated(IdentityError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Unauthorized"


def _envelope(code: str, message: str, details: dict | None = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


def error_response(exc: IdentityError) -> JSONResponse:
    headers = {}
    if exc.status_code == 429 and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    elif exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(
        status_code=exc.status_code,
        content=_envelope(exc.code, exc.message, exc.details),
        headers=headers or None,
    )


async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return error_response(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
    err = ValidationError("Invalid request body", fields=[f for f in fields if f])
    return error_response(err)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = {401: "unauthenticated", 404: "not_found", 405: "method_not_allowed"}.get(exc.status_code, "http_error")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=_envelope(code, message),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(InternalError())
