from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass, field


@dataclass(frozen=True)
class OtpSecret:
    """A freshly generated one-time code and the digest that gets persisted.

    The plaintext is meant to be handed to a delivery channel exactly once.
    """

    plaintext: str = field(repr=False)
    digest: str


def generate_otp_code(length: int = 6) -> str:
    if length < 4:
        raise ValueError("OTP length must be at least 4 digits")
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def hash_otp_code(code: str, pepper: str = "") -> str:
    """One-way digest of an OTP code.

    Plain SHA-256 when no pepper is configured; HMAC-SHA256 keyed with the
    pepper otherwise, so a leaked table cannot be brute-forced offline
    without the storage secret.
    """
    material = code.encode()
    if pepper:
        return hmac.new(pepper.encode(), material, hashlib.sha256).hexdigest()
    return hashlib.sha256(material).hexdigest()


def otp_digest_matches(code: str, digest: str, pepper: str = "") -> bool:
    return hmac.compare_digest(hash_otp_code(code, pepper), digest)


def generate_otp_secret(length: int = 6, pepper: str = "") -> OtpSecret:
    code = generate_otp_code(length)
    return OtpSecret(plaintext=code, digest=hash_otp_code(code, pepper))
