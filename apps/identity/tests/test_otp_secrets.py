import hashlib
import hmac

import pytest

from ride_shared import generate_otp_code, generate_otp_secret, hash_otp_code, otp_digest_matches


def test_generated_codes_are_fixed_length_digits():
    for _ in range(200):
        code = generate_otp_code(6)
        assert len(code) == 6 and code.isdigit()
    assert len(generate_otp_code(8)) == 8


def test_short_codes_are_refused():
    with pytest.raises(ValueError):
        generate_otp_code(3)


def test_secret_digest_matches_recomputed_digest():
    secret = generate_otp_secret(6)
    assert secret.digest == hash_otp_code(secret.plaintext)
    assert secret.digest != secret.plaintext
    assert secret.digest == hashlib.sha256(secret.plaintext.encode()).hexdigest()
    assert otp_digest_matches(secret.plaintext, secret.digest)


def test_peppered_digest_uses_hmac():
    secret = generate_otp_secret(6, pepper="storage-key")
    expected = hmac.new(b"storage-key", secret.plaintext.encode(), hashlib.sha256).hexdigest()
    assert secret.digest == expected
    assert otp_digest_matches(secret.plaintext, secret.digest, "storage-key")
    assert not otp_digest_matches(secret.plaintext, secret.digest)
    assert not otp_digest_matches(secret.plaintext, secret.digest, "other-key")


def test_plaintext_is_hidden_from_repr():
    secret = generate_otp_secret(6)
    assert repr(secret) == f"OtpSecret(digest={secret.digest!r})"
