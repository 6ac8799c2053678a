"""
Phone address helpers.

Storage format is E.164 with a leading "+" (e.g. +212612345678).
The WhatsApp Cloud API wants the same number as digits only.
"""

from __future__ import annotations

import re

_E164 = re.compile(r"^\+[1-9]\d{1,14}$")


def normalize_phone(phone: str, country_code: str | None = None) -> str:
    """
    Normalize a raw phone number to E.164 with a leading "+".

    Strips spaces, dashes and brackets.  If ``country_code`` is given it is
    prefixed to the local number (a leading "+" on the number is dropped).
    Numbers that arrive without "+" are assumed to already carry their
    country code, which is what WhatsApp sends in the ``from`` field.
    """
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if country_code:
        code = re.sub(r"[^\d+]", "", country_code)
        number = cleaned.lstrip("+")
        cleaned = f"{code}{number}"
    if not cleaned:
        return ""
    return cleaned if cleaned.startswith("+") else f"+{cleaned}"


def format_for_whatsapp(phone: str) -> str:
    """Digits only, no "+" — the wire format the Graph API expects."""
    return re.sub(r"\D", "", phone or "")


def is_valid_e164(phone: str) -> bool:
    return bool(_E164.match(phone or ""))
