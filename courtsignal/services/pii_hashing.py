"""PII normalization and hashing for Meta CAPI `user_data`.

WHAT:
    Canonicalizes raw contact identifiers and SHA-256 hashes them into the
    lowercase hex form Meta expects for `em` / `ph`.

WHY:
    Meta matches users by hashed identifiers, so identical real-world values
    must always hash identically. Hashing happens on the server only; clients
    send raw values and never a hash they computed themselves.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/customer-information-parameters
"""

import hashlib
import re
from typing import Optional

# Liveness heuristic only, not full E.164 validation
MIN_PHONE_DIGITS = 8

_PHONE_STRIP_RE = re.compile(r"[^\d+]")


def sha256_hash(value: str) -> str:
    """Hash a value using SHA256 and return lowercase hex."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_email(raw: Optional[str]) -> Optional[str]:
    """Trim and lowercase an email; None when nothing is left."""
    if not raw:
        return None
    normalized = raw.strip().lower()
    return normalized or None


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Normalize a phone number to `+<digits>`.

    Everything except digits and "+" is stripped and exactly one leading "+"
    is kept. Returns None when fewer than MIN_PHONE_DIGITS digits remain.

    Example:
        >>> normalize_phone("06 12-34 56 78")
        '+0612345678'
        >>> normalize_phone("12 34") is None
        True
    """
    if not raw:
        return None
    stripped = _PHONE_STRIP_RE.sub("", raw)
    digits = stripped.replace("+", "")
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return f"+{digits}"


def hash_email(raw: Optional[str]) -> Optional[str]:
    normalized = normalize_email(raw)
    return sha256_hash(normalized) if normalized else None


def hash_phone(raw: Optional[str]) -> Optional[str]:
    normalized = normalize_phone(raw)
    return sha256_hash(normalized) if normalized else None
