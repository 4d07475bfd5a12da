"""
Phone number normalization.

Targets are keyed by normalized phone number, so every component funnels raw
numbers through ``normalize_phone`` before using them as keys.
"""

import re

_NON_DIGITS = re.compile(r"\D")


def digits_only(raw: str | None) -> str:
    return _NON_DIGITS.sub("", raw or "")


def normalize_phone(raw: str | None) -> str:
    """Normalize a phone number to E.164.

    Ten-digit numbers are treated as North American and get a ``+1`` prefix.
    Anything else keeps its digits behind a single ``+``.

    Raises:
        ValueError: If the input contains no digits at all.
    """
    digits = digits_only(raw)
    if not digits:
        raise ValueError(f"Phone number has no digits: {raw!r}")
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def extract_area_code(raw: str | None) -> str | None:
    """Return the three-digit North American area code, or None."""
    digits = digits_only(raw)
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:4]
    if len(digits) == 10:
        return digits[0:3]
    return None


def mask_phone(raw: str | None) -> str:
    """Mask all but the last four digits for log output."""
    digits = digits_only(raw)
    if len(digits) <= 4:
        return "****"
    return f"***{digits[-4:]}"


def format_phone(raw: str | None) -> str:
    """Human-readable ``(AAA) XXX-XXXX`` form for North American numbers."""
    digits = digits_only(raw)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"({digits[0:3]}) {digits[3:6]}-{digits[6:]}"
    return raw or ""
