import json
import logging
from types import SimpleNamespace

import httpx
import pytest

from app.delivery import (
    LoggingFallbackGateway,
    SmsGateway,
    build_delivery_gateway,
    build_send_failure_fallback,
    render_message,
)
from app.errors import DeliveryError, DeliveryRateLimited


SMS_URL = "https://sms.example.test/v1/messages"


def _gateway(handler, **kwargs):
    return SmsGateway(
        url=SMS_URL,
        auth_token="tok-123",
        sender_name="Ride",
        template="Code {code}, valid {minutes} min",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _settings(**overrides):
    base = dict(
        OTP_SMS_PROVIDER="http",
        OTP_SMS_HTTP_URL=SMS_URL,
        OTP_SMS_HTTP_AUTH_TOKEN="tok-123",
        OTP_SMS_SENDER_NAME="Ride",
        OTP_SMS_TEMPLATE="Code {code}",
        OTP_SMS_TIMEOUT_SECS=2.0,
        OTP_ALLOW_LOG_FALLBACK=False,
        OTP_FALLBACK_ON_SEND_FAILURE=False,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


def test_sms_gateway_posts_message():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "prov-42"})

    receipt = _gateway(handler).send("+251911000001", "123456", 300)

    assert receipt.expires_in == 300
    assert receipt.provider_message_id == "prov-42"
    (request,) = seen
    assert request.method == "POST"
    assert str(request.url) == SMS_URL
    assert request.headers["Authorization"] == "Bearer tok-123"
    assert json.loads(request.content) == {
        "to": "+251911000001",
        "message": "Code 123456, valid 5 min",
        "sender": "Ride",
    }


def test_provider_429_is_rate_limited_with_retry_after():
    gateway = _gateway(lambda request: httpx.Response(429, headers={"Retry-After": "12"}))
    with pytest.raises(DeliveryRateLimited) as exc:
        gateway.send("+251911000001", "123456", 300)
    assert exc.value.retry_after == 12


def test_provider_error_status_is_delivery_error():
    gateway = _gateway(lambda request: httpx.Response(503, text="down"))
    with pytest.raises(DeliveryError) as exc:
        gateway.send("+251911000001", "123456", 300)
    assert not isinstance(exc.value, DeliveryRateLimited)
    assert "123456" not in exc.value.message


def test_timeout_is_delivery_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(DeliveryError) as exc:
        _gateway(handler).send("+251911000001", "123456", 300)
    assert exc.value.message == "SMS provider timed out"


def test_connection_failure_is_delivery_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(DeliveryError):
        _gateway(handler).send("+251911000001", "123456", 300)


def test_non_json_success_body_is_accepted():
    receipt = _gateway(lambda request: httpx.Response(202, text="queued")).send("+251911000001", "123456", 300)
    assert receipt.provider_message_id is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"url": "", "auth_token": "tok"},
        {"url": "ftp://sms.example.test", "auth_token": "tok"},
        {"url": SMS_URL, "auth_token": ""},
        {"url": SMS_URL, "auth_token": "tok", "timeout": 0},
    ],
)
def test_sms_gateway_refuses_unusable_configuration(kwargs):
    with pytest.raises(ValueError):
        SmsGateway(**kwargs)


def test_fallback_gateway_logs_code(caplog):
    with caplog.at_level(logging.WARNING, logger="identity.otp.fallback"):
        receipt = LoggingFallbackGateway().send("+251922222222", "654321", 300)
    assert receipt.expires_in == 300
    assert "[OTP FALLBACK] to=+251922222222 code=654321 ttl=300s" in caplog.text


def test_render_message_rounds_minutes_down_but_not_to_zero():
    assert render_message("{code}/{minutes}/{seconds}", "1", 300) == "1/5/300"
    assert render_message("{code}/{minutes}", "1", 30) == "1/1"


def test_build_picks_http_gateway():
    gateway = build_delivery_gateway(_settings())
    assert isinstance(gateway, SmsGateway)
    assert gateway.timeout == 2.0
    assert build_send_failure_fallback(_settings(), gateway) is None


def test_build_falls_back_to_log_when_http_unusable_and_allowed():
    gateway = build_delivery_gateway(_settings(OTP_SMS_HTTP_URL="", OTP_ALLOW_LOG_FALLBACK=True))
    assert isinstance(gateway, LoggingFallbackGateway)


def test_build_refuses_log_fallback_when_not_allowed():
    with pytest.raises(RuntimeError):
        build_delivery_gateway(_settings(OTP_SMS_HTTP_URL=""))
    with pytest.raises(RuntimeError):
        build_delivery_gateway(_settings(OTP_SMS_PROVIDER="log"))
    with pytest.raises(RuntimeError):
        build_delivery_gateway(_settings(OTP_SMS_PROVIDER="carrier-pigeon"))


def test_send_failure_fallback_only_wraps_a_real_provider():
    settings = _settings(OTP_ALLOW_LOG_FALLBACK=True, OTP_FALLBACK_ON_SEND_FAILURE=True)
    assert isinstance(build_send_failure_fallback(settings, build_delivery_gateway(settings)), LoggingFallbackGateway)
    assert build_send_failure_fallback(settings, LoggingFallbackGateway()) is None
    assert build_send_failure_fallback(_settings(OTP_FALLBACK_ON_SEND_FAILURE=True), object()) is None
