import os
from datetime import datetime, timedelta

import pytest


# Ensure sensible defaults for tests before app import
os.environ.setdefault("ENV", "dev")
os.environ["DB_URL"] = "sqlite://"
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "100000")
os.environ.setdefault("OTP_SMS_PROVIDER", "log")
os.environ.setdefault("OTP_SWEEP_POLL_SECS", "0")

from app.accounts import AccountActivator  # noqa: E402
from app.clock import FrozenClock  # noqa: E402
from app.database import make_engine, make_session_factory  # noqa: E402
from app.models import Base  # noqa: E402
from app.otp_policy import OtpPolicy  # noqa: E402
from app.otp_service import OtpService  # noqa: E402
from app.otp_store import SqlOtpStore  # noqa: E402
from app.tokens import TokenIssuer  # noqa: E402

from utils import TEST_JWT_SECRET, RecordingGateway  # noqa: E402


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 8, 30, 0))


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def token_issuer(clock):
    return TokenIssuer([TEST_JWT_SECRET], timedelta(hours=1), clock)


@pytest.fixture
def make_service(session_factory, clock, token_issuer):
    def _make(gateway=None, policy=None, fallback=None, store=None):
        return OtpService(
            session_factory=session_factory,
            store=store or SqlOtpStore(),
            gateway=gateway if gateway is not None else RecordingGateway(),
            activator=AccountActivator(),
            token_issuer=token_issuer,
            policy=policy or OtpPolicy(),
            clock=clock,
            fallback=fallback,
        )

    return _make
