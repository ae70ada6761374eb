from __future__ import annotations

import re
from dataclasses import dataclass

_NON_DIGITS = re.compile(r"\D")


class PhoneValidationError(ValueError):
    """Raised when raw input cannot be turned into a canonical phone number."""


@dataclass(frozen=True)
class PhoneRules:
    """Accepted phone formats for one home market.

    ``local_prefixes`` are the national mobile prefixes dialled with a trunk
    zero (``09…``/``07…``); such 10-digit numbers are rewritten onto
    ``country_code``. Everything else must already be international.
    """

    country_code: str = "251"
    local_prefixes: tuple[str, ...] = ("09", "07")
    min_digits: int = 8
    max_digits: int = 15
    national_mobile_leads: tuple[str, ...] = ("9", "7")
    national_digits: int = 9


DEFAULT_PHONE_RULES = PhoneRules()


def normalize_phone(raw: str, rules: PhoneRules = DEFAULT_PHONE_RULES) -> str:
    """Normalize raw phone input to ``+<country code><subscriber number>``.

    Pure and deterministic; feeding the output back in returns it unchanged.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise PhoneValidationError("Phone number is required")
    digits = _NON_DIGITS.sub("", raw)
    if digits.startswith("00"):
        digits = digits[2:]
    elif len(digits) == 10 and digits[:2] in rules.local_prefixes:
        digits = rules.country_code + digits[1:]
    if not digits or digits.startswith("0"):
        raise PhoneValidationError("Invalid phone number format")
    if not rules.min_digits <= len(digits) <= rules.max_digits:
        raise PhoneValidationError("Invalid phone number format")
    if digits.startswith(rules.country_code):
        national = digits[len(rules.country_code):]
        if len(national) != rules.national_digits or national[:1] not in rules.national_mobile_leads:
            raise PhoneValidationError("Invalid phone number format")
    return "+" + digits


def is_valid_phone(raw: str, rules: PhoneRules = DEFAULT_PHONE_RULES) -> bool:
    try:
        normalize_phone(raw, rules)
    except PhoneValidationError:
        return False
    return True


def mask_phone(phone: str, visible_digits: int = 3) -> str:
    if not phone:
        return ""
    if len(phone) <= visible_digits:
        return phone
    return "*" * (len(phone) - visible_digits) + phone[-visible_digits:]
