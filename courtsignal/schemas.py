"""Pydantic schemas for request/response payloads.

This module defines the contracts between clients and the API:
- Meta CAPI relay requests (what the tracking dispatcher sends)
- Relay and webhook responses (for OpenAPI docs)
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MetaCAPIRelayRequest(BaseModel):
    """Body accepted by the `meta-capi` relay function.

    WHAT: A TrackingEvent plus raw (unhashed) contact fields and the browser
          attribution cookies
    WHY: Hashing and enrichment happen server-side, so the client sends raw
         values and the relay owns the normalization policy

    `event_name` and `event_id` are optional here so the relay can answer
    with its own 400 messages instead of a generic validation error.

    Example:
        {
            "event_name": "InitiateCheckout",
            "event_id": "0d6c8f6e-3c1b-4f0e-9a4c-0f1f5d1e2a3b",
            "event_source_url": "https://club.example/reserve",
            "custom_data": {"currency": "MAD", "value": 100, "content_ids": ["S1"]},
            "email": "User@Example.com ",
            "fbp": "fb.1.1700000000000.123456789"
        }
    """
    # Numeric ids (event_id: 12345) are accepted as their string form
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    event_name: Optional[str] = None
    event_id: Optional[str] = None
    event_time: Any = Field(None, description="Unix seconds; wall clock is used when not a finite number")
    event_source_url: Optional[str] = None
    action_source: str = "website"
    custom_data: Optional[Dict[str, Any]] = None

    # user_data pieces supplied by the client
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    external_id: Any = Field(None, description="Any non-empty value, forwarded as-is")
    email: Optional[str] = Field(None, description="Plain text, hashed by the relay")
    phone: Optional[str] = Field(None, description="Plain text, normalized and hashed by the relay")

    # Privacy / processing options
    data_processing_options: Optional[List[str]] = None
    data_processing_options_country: Optional[int] = None
    data_processing_options_state: Optional[int] = None

    # Attribution / testing
    attribution_data: Optional[Dict[str, Any]] = None
    original_event_data: Optional[Dict[str, Any]] = None
    test_event_code: Optional[str] = None


class MetaCAPIRelayResponse(BaseModel):
    ok: bool = True
    fb: Dict[str, Any] = Field(default_factory=dict, description="Meta's response body")


class ErrorResponse(BaseModel):
    error: str
    details: Optional[Any] = None


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
    message: Optional[str] = None
