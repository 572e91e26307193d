"""Normalization of raw statement vendor strings into lookup keys.

Examples:
    "POS 4829 AMZN MKTPLACE US*1A2B3" -> "amzn mktplace us 1a2b3"
    "UPI-RAZOR1234*SWIGGY"            -> "swiggy"
    "  Starbucks   #4821 "            -> "starbucks"
"""

import re

from .errors import ValidationError

MAX_TEXT_LENGTH = 500
MAX_NAME_LENGTH = 200

# Processor boilerplate that only ever appears in front of the merchant.
LEADING_TOKENS = {
    "pos",
    "upi",
    "neft",
    "imps",
    "rtgs",
    "ach",
    "debit",
    "credit",
    "purchase",
    "card",
    "payment",
}

_DISALLOWED = re.compile(r"[^\w\s*]")
_GATEWAY = re.compile(r"\b(?:razor|payu|billdesk|ccavenue)\d*\b")
_LONG_NUMBER = re.compile(r"\b\d{4,}\b")
_SEPARATORS = re.compile(r"[\s*_]+")


def validate_vendor_text(text: str | None) -> str:
    if text is None or not text.strip():
        raise ValidationError("Vendor text is required")
    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationError(
            "Vendor text too long",
            details={"max_length": MAX_TEXT_LENGTH, "length": len(text)},
        )
    return text


def _basic_form(text: str) -> str:
    folded = _DISALLOWED.sub(" ", text.casefold())
    return _SEPARATORS.sub(" ", folded).strip()


def normalize_vendor_text(text: str | None) -> str:
    """Canonicalize raw vendor text into the key used for mapping lookups."""
    text = validate_vendor_text(text)
    basic = _basic_form(text)

    stripped = _GATEWAY.sub(" ", basic)
    stripped = _LONG_NUMBER.sub(" ", stripped)
    tokens = _SEPARATORS.sub(" ", stripped).strip().split(" ")
    while tokens and tokens[0] in LEADING_TOKENS:
        tokens.pop(0)

    key = " ".join(t for t in tokens if t)
    return key or basic


def clean_mapped_name(name: str | None) -> str:
    if name is None:
        return ""
    return " ".join(name.split())
