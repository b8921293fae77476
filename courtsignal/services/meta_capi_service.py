"""Meta Conversions API (CAPI) relay.

WHAT:
    Receives a tracking request from the client, enriches it with
    network-level attribution (IP, user agent) and hashed PII, and forwards
    one normalized event to Meta's ingestion endpoint.

WHY:
    - Server-side events survive ad blockers and iOS 14+ tracking limits
    - PII is hashed in one trusted place, never by the client
    - Deduplication with the browser pixel via the shared event_id

HOW:
    POST https://graph.facebook.com/{version}/{pixel_id}/events?access_token=...
    body: {"data": [event], "test_event_code"?: str}

    One attempt per request. Retries belong to the caller.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - courtsignal/routers/meta_capi.py (HTTP surface)
    - courtsignal/services/tracking_dispatcher.py (client side)
"""

import logging
import math
import time
from typing import Any, Dict, Mapping, Optional, Union

import httpx
from pydantic import ValidationError

from courtsignal.deps import Settings
from courtsignal.schemas import MetaCAPIRelayRequest
from courtsignal.services.pii_hashing import hash_email, hash_phone

logger = logging.getLogger(__name__)

# Function name the relay is invoked by (POST /functions/v1/{name})
RELAY_FUNCTION_NAME = "meta-capi"


class MetaCAPIError(Exception):
    """Base exception for Meta CAPI relay errors."""
    pass


class MetaCAPIValidationError(MetaCAPIError):
    """The tracking request is missing a mandatory field or is malformed."""
    pass


class MetaCAPIUpstreamError(MetaCAPIError):
    """Meta answered with a non-success status.

    `details` holds Meta's own error body for diagnosis.
    """

    def __init__(self, message: str, status_code: int, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


# =============================================================================
# REQUEST ENRICHMENT
# =============================================================================

def _lower_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    if not headers:
        return {}
    return {key.lower(): value for key, value in headers.items()}


def client_ip_from_headers(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    """First hop of X-Forwarded-For, else X-Real-IP, else None."""
    lowered = _lower_headers(headers)
    forwarded_for = lowered.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    return lowered.get("x-real-ip") or None


def user_agent_from_headers(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    return _lower_headers(headers).get("user-agent") or None


def resolve_event_time(value: Any) -> Union[int, float]:
    """Caller-supplied event time when it is a finite number, else now."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return int(time.time())
    return value


class MetaCAPIService:
    """Relay for server-side events to Meta Conversions API.

    WHAT: Validates, enriches and forwards one tracking event per request
    WHY: The durable half of dual-channel tracking (the pixel is best effort)

    Configuration is injected at construction so tests can substitute it;
    the service holds no mutable state between requests.

    Usage:
        ```python
        service = MetaCAPIService(get_settings())
        result = await service.relay(
            {"event_name": "Purchase", "event_id": event_id, "email": "a@b.c"},
            headers=request.headers,
        )
        # {"ok": True, "fb": {"events_received": 1, "fbtrace_id": "..."}}
        ```
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """Initialize the relay with deployment configuration.

        Args:
            settings: Process-wide settings (pixel id, token, version, test code)
            http_client: Optional shared client; one is created per call otherwise
        """
        self.pixel_id = settings.META_CAPI_PIXEL_ID
        self.access_token = settings.META_CAPI_ACCESS_TOKEN
        self.api_version = settings.META_CAPI_API_VERSION
        self.default_test_event_code = settings.META_CAPI_TEST_EVENT_CODE
        self.timeout = settings.META_CAPI_TIMEOUT_SECONDS
        self.events_url = (
            f"{settings.META_GRAPH_BASE_URL.rstrip('/')}/{self.api_version}/{self.pixel_id}/events"
        )
        self._http_client = http_client

        if not settings.capi_configured:
            # Service still starts; requests will fail against Meta
            logger.warning("[META_CAPI] Missing META_CAPI_PIXEL_ID or META_CAPI_ACCESS_TOKEN in environment")

    async def relay(
        self,
        body: Union[MetaCAPIRelayRequest, Dict[str, Any], None],
        headers: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        """Validate, enrich and forward one tracking event.

        Args:
            body: Relay request (parsed model or raw JSON object)
            headers: Inbound request headers (IP and user agent source)

        Returns:
            {"ok": True, "fb": <Meta response body>}

        Raises:
            MetaCAPIValidationError: event_name / event_id missing, or bad body
            MetaCAPIUpstreamError: Meta returned a non-success status
            MetaCAPIError: Network failure reaching Meta
        """
        request = self.parse_request(body)
        payload = self.build_payload(request, headers)
        fb = await self._send_events(payload)
        return {"ok": True, "fb": fb}

    @staticmethod
    def parse_request(body: Union[MetaCAPIRelayRequest, Dict[str, Any], None]) -> MetaCAPIRelayRequest:
        if isinstance(body, MetaCAPIRelayRequest):
            request = body
        elif body is None or isinstance(body, dict):
            try:
                request = MetaCAPIRelayRequest.model_validate(body or {})
            except ValidationError as e:
                raise MetaCAPIValidationError(f"Invalid tracking request: {e.errors()[0]['msg']}") from e
        else:
            raise MetaCAPIValidationError("Request body must be a JSON object")

        if not request.event_name:
            raise MetaCAPIValidationError("event_name is required")
        if not request.event_id:
            # event_id is Meta's dedup key against the paired pixel event
            raise MetaCAPIValidationError("event_id is required for deduplication")
        return request

    def build_user_data(
        self,
        request: MetaCAPIRelayRequest,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        """Build the sparse user_data object with hashed PII.

        Only non-empty fields are included; `em` and `ph` use Meta's
        array form.
        """
        em_hashed = hash_email(request.email)
        ph_hashed = hash_phone(request.phone)

        candidates = (
            ("client_ip_address", client_ip_from_headers(headers)),
            ("client_user_agent", user_agent_from_headers(headers)),
            ("fbp", request.fbp),
            ("fbc", request.fbc),
            ("external_id", request.external_id),
            ("em", [em_hashed] if em_hashed else None),
            ("ph", [ph_hashed] if ph_hashed else None),
        )
        return {key: value for key, value in candidates if value}

    def build_event(
        self,
        request: MetaCAPIRelayRequest,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        """Build a single event envelope.

        WHAT: Merges enrichment, hashed PII, cookies and caller data
        WHY: Meta requires this exact shape for each entry of `data`
        """
        event: Dict[str, Any] = {
            "event_name": request.event_name,
            "event_time": resolve_event_time(request.event_time),
            "action_source": request.action_source or "website",
            "event_id": request.event_id,  # CRITICAL for deduplication
            "user_data": self.build_user_data(request, headers),
            "custom_data": request.custom_data or {},
        }

        if request.event_source_url:
            event["event_source_url"] = request.event_source_url
        if request.attribution_data:
            event["attribution_data"] = request.attribution_data
        if request.original_event_data:
            event["original_event_data"] = request.original_event_data

        # Country/state are only meaningful alongside the options list
        if request.data_processing_options is not None:
            event["data_processing_options"] = request.data_processing_options
            if request.data_processing_options_country is not None:
                event["data_processing_options_country"] = request.data_processing_options_country
            if request.data_processing_options_state is not None:
                event["data_processing_options_state"] = request.data_processing_options_state

        return event

    def build_payload(
        self,
        request: MetaCAPIRelayRequest,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"data": [self.build_event(request, headers)]}

        # Request test code wins over the deployment default
        test_event_code = request.test_event_code or self.default_test_event_code
        if test_event_code:
            payload["test_event_code"] = test_event_code

        return payload

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        params = {"access_token": self.access_token}
        if self._http_client is not None:
            return await self._http_client.post(self.events_url, params=params, json=payload)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.events_url, params=params, json=payload)

    async def _send_events(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send the payload to Meta Conversions API.

        Returns:
            Meta's response body (events_received, fbtrace_id, ...)

        Raises:
            MetaCAPIUpstreamError: Non-success response
            MetaCAPIError: Network failure
        """
        events = payload["data"]
        logger.info(
            f"[META_CAPI] Sending {len(events)} event(s) to pixel {self.pixel_id}",
            extra={
                "event_names": [e["event_name"] for e in events],
                "event_ids": [e["event_id"] for e in events],
                "test_mode": "test_event_code" in payload,
            }
        )

        try:
            response = await self._post(payload)
        except httpx.RequestError as e:
            logger.error(f"[META_CAPI] Network error: {e}")
            raise MetaCAPIError(f"Network error sending to Meta CAPI: {e}") from e

        try:
            result = response.json()
        except ValueError:
            result = {"message": response.text}

        if not response.is_success:
            logger.error(
                f"[META_CAPI] API error: {response.status_code}",
                extra={"response": result}
            )
            raise MetaCAPIUpstreamError("Facebook API error", response.status_code, details=result)

        logger.info(
            f"[META_CAPI] Success: {result.get('events_received', 0)} event(s) received",
            extra={"fbtrace_id": result.get("fbtrace_id", "")}
        )
        return result
