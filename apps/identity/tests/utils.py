import uuid

from app.delivery import DeliveryReceipt
from app.errors import DeliveryError


TEST_JWT_SECRET = "identity-test-secret-0123456789abcdef"


def unique_phone(lead: str = "9") -> str:
    """Return a random canonical Ethiopian mobile number starting with ``lead``."""
    suffix = str(uuid.uuid4().int % (10 ** 8)).zfill(8)
    return f"+251{lead}{suffix}"


def wrong_code(code: str) -> str:
    return str((int(code) + 1) % (10 ** len(code))).zfill(len(code))


class RecordingGateway:
    name = "sms"

    def __init__(self):
        self.sent = []

    def send(self, phone, code, ttl_secs):
        self.sent.append((phone, code, ttl_secs))
        return DeliveryReceipt(expires_in=ttl_secs, provider_message_id=f"msg-{len(self.sent)}")

    def last_code(self, phone=None):
        for to, code, _ in reversed(self.sent):
            if phone is None or to == phone:
                return code
        raise AssertionError(f"no OTP sent to {phone}")


class FailingGateway:
    name = "sms"

    def __init__(self, exc=None):
        self.exc = exc if exc is not None else DeliveryError("SMS provider unreachable")
        self.calls = 0

    def send(self, phone, code, ttl_secs):
        self.calls += 1
        raise self.exc
