"""Event identity for dual-channel (pixel + CAPI) deduplication.

Meta deduplicates a browser pixel event and a Conversions API event when both
carry the same `event_id`. One identity is minted per logical business event
(e.g. "checkout initiated for slot X") and attached to every emission of it.
"""

import uuid


def mint_event_id() -> str:
    """Return a new UUID-v4 string (122 random bits)."""
    return str(uuid.uuid4())
