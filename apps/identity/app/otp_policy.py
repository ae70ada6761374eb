from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class OtpPolicy:
    code_length: int = 6
    ttl_secs: int = 300
    max_attempts: int = 3
    lockout_secs: int = 1800
    # Minimum spacing between two issuances for the same phone and purpose
    min_interval_secs: int = 60
    purpose: str = "account-activation"
    pepper: str = ""

    def __post_init__(self) -> None:
        if self.ttl_secs <= 0:
            raise ValueError("ttl_secs must be positive")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if self.lockout_secs < 0 or self.min_interval_secs < 0:
            raise ValueError("lockout_secs and min_interval_secs cannot be negative")
