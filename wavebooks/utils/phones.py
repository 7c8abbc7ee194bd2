# wavebooks/utils/phones.py
from __future__ import annotations


def digits_only(value: str | None) -> str:
    """Strip everything but digits: "+225 07-00 00 00" -> "2250700000"."""
    return "".join(ch for ch in (value or "") if ch.isdigit())


def phone_suffix(value: str | None, length: int) -> str | None:
    """
    Last `length` digits of a phone number, or None when the number is too
    short to compare safely.
    """
    digits = digits_only(value)
    if length <= 0 or len(digits) < length:
        return None
    return digits[-length:]
