"""Redaction helpers for log context.

Guest names, e-mails and M-Pesa phone numbers must never reach the logs in
clear. Phone numbers keep their last three digits so support can still match
a payer to a complaint.
"""

import re
from typing import Any

# 07XXXXXXXX, 01XXXXXXXX, 2547XXXXXXXX, +254 7XX XXX XXX and generic long numbers.
_PHONE = re.compile(r"(?<![\w-])\+?\d[\d\s\-()]{7,}\d(?![\w-])")
_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

# Keys whose values are personal data regardless of shape.
SENSITIVE_KEYS = frozenset(
    {
        "guest_name",
        "guest_email",
        "guest_phone",
        "guest_contact",
        "phone",
        "phone_number",
        "payment_phone",
        "email",
        "name",
        "password",
    }
)

REDACTED = "[REDACTED]"


def mask_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    if len(digits) <= 3:
        return REDACTED
    return "*" * (len(digits) - 3) + digits[-3:]


def _mask_match(match: re.Match) -> str:
    text = match.group(0)
    # Dates and short codes have fewer digits than any phone number.
    if sum(ch.isdigit() for ch in text) < 9:
        return text
    return mask_phone(text)


def redact_string(value: str) -> str:
    value = _EMAIL.sub(REDACTED, value)
    return _PHONE.sub(_mask_match, value)


def redact_value(value: Any) -> Any:
    """Make a value safe to log. Containers are summarized, never dumped."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        return f"dict(keys={sorted(map(str, value.keys()))})"
    if isinstance(value, (list, tuple, set)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, Any]:
    """Build structured log fields with personal data removed."""
    return {
        key: (REDACTED if key in SENSITIVE_KEYS and value is not None else redact_value(value))
        for key, value in kwargs.items()
    }
