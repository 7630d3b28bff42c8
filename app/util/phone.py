from __future__ import annotations

import re

from app.core.errors import InvalidPhoneNumber

_NON_DIGITS = re.compile(r"\D+")

# E.164 allows at most 15 digits; anything shorter than 11 after the country
# code was added is not a dialable mobile/landline number.
_MIN_LEN = 11
_MAX_LEN = 15


def digits_only(raw: str | int | None) -> str:
    return _NON_DIGITS.sub("", str(raw or ""))


def normalize_phone(raw: str | int | None, *, default_country_code: str = "55") -> str:
    """Canonical digits-only international form.

    - "11987654321"        -> "5511987654321"
    - "+55 11 98765-4321"  -> "5511987654321"
    - "0014155550123"      -> "14155550123" (international prefix dropped)
    - "011987654321"       -> trunk prefix dropped, then country code added
    """
    digits = digits_only(raw)
    if not digits:
        raise InvalidPhoneNumber(f"empty phone number: {raw!r}")

    international = digits.startswith("00")
    if international:
        digits = digits[2:]
    elif digits.startswith("0") and len(digits) in (11, 12):
        digits = digits[1:]

    if not international and len(digits) in (10, 11):
        digits = f"{digits_only(default_country_code)}{digits}"

    if not _MIN_LEN <= len(digits) <= _MAX_LEN:
        raise InvalidPhoneNumber(f"invalid phone number: {raw!r}", detail={"digits": digits})
    return digits


def is_group_jid(to: str) -> bool:
    return str(to).endswith("@g.us")
