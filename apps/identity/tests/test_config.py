import pytest

from app.config import Settings
from app.otp_policy import OtpPolicy
from ride_shared import env_bool, env_int, env_list


def test_jwt_secrets_are_current_first(monkeypatch):
    s = Settings()
    monkeypatch.setattr(s, "JWT_SECRET", "current")
    monkeypatch.setattr(s, "JWT_SECRET_PREV", "previous")
    monkeypatch.setattr(s, "JWT_SECRETS_LIST_RAW", "listed-a, listed-b,")
    assert s.JWT_SECRETS == ["current", "listed-a", "listed-b", "previous"]


def test_policy_and_phone_rules_follow_settings(monkeypatch):
    s = Settings()
    monkeypatch.setattr(s, "OTP_TTL_SECS", 120)
    monkeypatch.setattr(s, "OTP_MAX_ATTEMPTS", 5)
    monkeypatch.setattr(s, "OTP_STORAGE_SECRET", "pepper")
    monkeypatch.setattr(s, "PHONE_COUNTRY_CODE", "963")
    monkeypatch.setattr(s, "PHONE_LOCAL_PREFIXES", ["09"])

    policy = s.otp_policy
    assert policy.ttl_secs == 120
    assert policy.max_attempts == 5
    assert policy.pepper == "pepper"
    assert s.phone_rules.country_code == "963"
    assert s.phone_rules.local_prefixes == ("09",)


def test_default_policy_values():
    policy = OtpPolicy()
    assert (policy.code_length, policy.ttl_secs, policy.max_attempts, policy.lockout_secs) == (6, 300, 3, 1800)


@pytest.mark.parametrize("kwargs", [{"ttl_secs": 0}, {"max_attempts": 0}, {"lockout_secs": -1}, {"min_interval_secs": -5}])
def test_policy_rejects_nonsense(kwargs):
    with pytest.raises(ValueError):
        OtpPolicy(**kwargs)


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("IDENTITY_FLAG", "yes")
    monkeypatch.setenv("IDENTITY_BLANK", " ")
    monkeypatch.setenv("IDENTITY_NUM", "42")
    monkeypatch.setenv("IDENTITY_LIST", "a, b,,c")
    assert env_bool("IDENTITY_FLAG") is True
    assert env_bool("IDENTITY_BLANK", default=True) is True
    assert env_int("IDENTITY_NUM", 1) == 42
    assert env_list("IDENTITY_LIST") == ["a", "b", "c"]
    assert env_list("IDENTITY_MISSING", default=["x"]) == ["x"]

    monkeypatch.setenv("IDENTITY_FLAG", "maybe")
    with pytest.raises(ValueError):
        env_bool("IDENTITY_FLAG")
    with pytest.raises(ValueError):
        env_int("IDENTITY_NUM", 1, minimum=100)
