"""Lead payload validation and sanitization.

Everything here is pure: no I/O, no clock, no mutation of the input. The pipeline
relies on that to quarantine a bad item without touching the database.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from leadcore.errors import LeadValidationError

DEFAULT_SOURCE = "API_IMPORT"
MIN_PHONE_DIGITS = 10

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NON_DIGIT_RE = re.compile(r"\D")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def parse_date(value: Any) -> date | None:
    """Parse YYYY-MM-DD or a full ISO-8601 datetime. Returns None when unparseable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = _as_text(value)
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def normalize_email(raw: Any) -> str | None:
    email = _as_text(raw).lower()
    if not email:
        return None
    if not _EMAIL_RE.match(email):
        raise LeadValidationError(f"Invalid email format: {email}")
    return email


def normalize_phone(raw: Any) -> str | None:
    text = _as_text(raw)
    if not text:
        return None
    digits = _NON_DIGIT_RE.sub("", text)
    if len(digits) < MIN_PHONE_DIGITS:
        raise LeadValidationError(f"Invalid phone format: {text}")
    return digits


def normalize_source(raw: Any) -> str:
    return _as_text(raw).upper() or DEFAULT_SOURCE


def validate_and_sanitize(raw: Any) -> dict[str, Any]:
    """Validate one inbound lead item and return its sanitized copy.

    Rules are applied in a fixed order so the reported reason is deterministic:
    first name, email-or-phone, response date, email shape, phone length,
    source default, consent date. Raises LeadValidationError on the first failure.
    """
    if not isinstance(raw, dict):
        raise LeadValidationError("Lead item must be an object")

    first_name = _as_text(raw.get("first_name"))
    if not first_name:
        raise LeadValidationError("First name is required")

    if not _as_text(raw.get("email")) and not _as_text(raw.get("phone")):
        raise LeadValidationError("Either email or phone is required")

    response_raw = raw.get("date_reponse")
    if not _as_text(response_raw):
        raise LeadValidationError("Response date is required")
    if parse_date(response_raw) is None:
        raise LeadValidationError(f"Invalid response date: {response_raw}")

    email = normalize_email(raw.get("email"))
    phone = normalize_phone(raw.get("phone"))
    source = normalize_source(raw.get("source"))

    consent_raw = raw.get("date_consentement")
    if _as_text(consent_raw) and parse_date(consent_raw) is None:
        raise LeadValidationError(f"Invalid consent date: {consent_raw}")

    return {
        **raw,
        "email": email,
        "phone": phone,
        "source": source,
        "first_name": first_name,
        "last_name": _as_text(raw.get("last_name")),
    }
