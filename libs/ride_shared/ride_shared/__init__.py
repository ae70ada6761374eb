from .otp import (
    OtpSecret,
    generate_otp_code,
    generate_otp_secret,
    hash_otp_code,
    otp_digest_matches,
)
from .rate_limit import SlidingWindowLimiter, RedisRateLimiter
from .env import env_bool, env_int, env_list
from .phone_utils import (
    DEFAULT_PHONE_RULES,
    PhoneRules,
    PhoneValidationError,
    is_valid_phone,
    mask_phone,
    normalize_phone,
)

__all__ = [
    "OtpSecret",
    "generate_otp_code",
    "generate_otp_secret",
    "hash_otp_code",
    "otp_digest_matches",
    "SlidingWindowLimiter",
    "RedisRateLimiter",
    "env_bool",
    "env_int",
    "env_list",
    "DEFAULT_PHONE_RULES",
    "PhoneRules",
    "PhoneValidationError",
    "is_valid_phone",
    "mask_phone",
    "normalize_phone",
]
