"""Dual-channel conversion tracking dispatcher.

WHAT:
    Turns one semantic booking action (page view, checkout initiated,
    purchase completed) into two emissions sharing one event_id:
    - channel 1: Meta Pixel signal (best effort, failures swallowed)
    - channel 2: `meta-capi` relay invocation (durable, errors propagate to
      whoever awaits the task)

WHY:
    Meta deduplicates the pixel and server events by event_id, and links
    InitiateCheckout and Purchase into one attributed journey when Purchase
    reuses the checkout's event_id.

HOW:
    Both emissions are scheduled as independent asyncio tasks and `emit`
    returns immediately. Nothing is shared between the two channels and their
    completion order is unconstrained; the shared event_id is the only
    correlation. A page navigation cancelling the relay task is an accepted
    loss for channel 2 only.

REFERENCES:
    - courtsignal/services/meta_capi_service.py (the relay being invoked)
    - https://developers.facebook.com/docs/marketing-api/conversions-api/deduplicate-pixel-and-server-events
"""

import asyncio
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set, Union

import httpx

from courtsignal.deps import Settings
from courtsignal.services.browser_signals import CookieSource, read_attribution_cookies
from courtsignal.services.event_identity import mint_event_id
from courtsignal.services.meta_capi_service import RELAY_FUNCTION_NAME

logger = logging.getLogger(__name__)


class TrackingAction(str, enum.Enum):
    page_view = "PageView"
    initiate_checkout = "InitiateCheckout"
    purchase = "Purchase"


# Actions that must reuse the event_id of an earlier emission
CORRELATED_ACTIONS = {TrackingAction.purchase}


def _sparse(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


# =============================================================================
# DOMAIN PARAMETERS
# =============================================================================

@dataclass
class ContactDetails:
    """Raw contact identifiers; hashed by the relay, never here."""
    email: Optional[str] = None
    phone: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class CheckoutDetails:
    """A slot about to be paid for (court or coach booking)."""
    value: float
    currency: str
    slot_id: str
    item_price: Optional[float] = None
    category: str = "court"
    court_id: Optional[str] = None
    coach_id: Optional[str] = None
    slot_start_iso: Optional[str] = None
    slot_end_iso: Optional[str] = None
    location_city: Optional[str] = None
    page_url: Optional[str] = None
    contact: ContactDetails = field(default_factory=ContactDetails)

    def custom_data(self) -> Dict[str, Any]:
        item_price = self.item_price if self.item_price is not None else self.value
        return _sparse({
            "currency": self.currency,
            "value": self.value,
            "content_type": "product",
            "content_ids": [self.slot_id],
            "contents": [{"id": self.slot_id, "quantity": 1, "item_price": item_price, "category": self.category}],
            "court_id": self.court_id,
            "coach_id": self.coach_id,
            "slot_start_iso": self.slot_start_iso,
            "slot_end_iso": self.slot_end_iso,
            "location_city": self.location_city,
        })


@dataclass
class PurchaseDetails:
    """A confirmed booking; reuses the checkout event_id."""
    booking_id: str
    value: Optional[float] = None
    currency: Optional[str] = None
    slot_id: Optional[str] = None
    item_price: Optional[float] = None
    court_id: Optional[str] = None
    coach_id: Optional[str] = None
    slot_start_iso: Optional[str] = None
    slot_end_iso: Optional[str] = None
    location_city: Optional[str] = None
    content_category: Optional[str] = "padel_booking"
    page_url: Optional[str] = None
    contact: ContactDetails = field(default_factory=ContactDetails)

    def custom_data(self) -> Dict[str, Any]:
        item_id = self.slot_id or self.booking_id
        item_price = self.item_price if self.item_price is not None else self.value
        return _sparse({
            "currency": self.currency,
            "value": self.value,
            "content_type": "product",
            "content_ids": [self.booking_id],
            "contents": [_sparse({"id": item_id, "quantity": 1, "item_price": item_price})],
            "order_id": self.booking_id,
            "content_category": self.content_category,
            "court_id": self.court_id,
            "coach_id": self.coach_id,
            "slot_start_iso": self.slot_start_iso,
            "slot_end_iso": self.slot_end_iso,
            "location_city": self.location_city,
        })


# =============================================================================
# TRANSPORTS
# =============================================================================

class MetaPixelTransport:
    """Channel 1: the Meta Pixel image endpoint (`/tr`).

    Sends the same signal `fbq('track', ...)` would, as a GET with the
    event name, event id and custom data as `cd[...]` parameters.
    """

    def __init__(
        self,
        pixel_id: Optional[str],
        endpoint: str = "https://www.facebook.com/tr",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.pixel_id = pixel_id
        self.endpoint = endpoint
        self.timeout = timeout
        self._http_client = http_client

    @property
    def available(self) -> bool:
        return bool(self.pixel_id)

    def build_params(self, event_name: str, payload: Dict[str, Any], event_id: str) -> Dict[str, str]:
        params = {"id": self.pixel_id, "ev": event_name, "eid": event_id, "noscript": "1"}
        for key, value in payload.items():
            params[f"cd[{key}]"] = value if isinstance(value, str) else json.dumps(value)
        return params

    async def track(self, event_name: str, payload: Dict[str, Any], event_id: str) -> None:
        params = self.build_params(event_name, payload, event_id)
        if self._http_client is not None:
            response = await self._http_client.get(self.endpoint, params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.endpoint, params=params)
        response.raise_for_status()


class RelayInvocationError(Exception):
    """The relay function answered with an error (or could not be reached)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RelayClient:
    """Channel 2: invokes a relay function by name over HTTP.

    POST {base_url}/functions/v1/{name} with a JSON body; returns the
    function's JSON result or raises RelayInvocationError.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._http_client = http_client

    def function_url(self, name: str) -> str:
        return f"{self.base_url}/functions/v1/{name}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["apikey"] = self.api_key
        return headers

    async def invoke(self, name: str, body: Dict[str, Any]) -> Any:
        url = self.function_url(name)
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=body, headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body, headers=self._headers())
        except httpx.RequestError as e:
            raise RelayInvocationError(f"Relay function {name} unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = response.text

        if not response.is_success:
            raise RelayInvocationError(
                f"Relay function {name} failed with status {response.status_code}",
                status_code=response.status_code,
                body=data,
            )
        return data


# =============================================================================
# DISPATCHER
# =============================================================================

@dataclass
class TrackingEmission:
    """Handle on one dispatched action.

    `relay_task` resolves to the relay's result or raises
    RelayInvocationError; awaiting it is optional.
    """
    event_id: str
    event_name: str
    pixel_payload: Dict[str, Any]
    relay_body: Dict[str, Any]
    relay_task: "asyncio.Task[Any]"
    pixel_task: Optional["asyncio.Task[None]"] = None


class TrackingDispatcher:
    """Fires the pixel and relay emissions for booking actions.

    Usage:
        ```python
        dispatcher = TrackingDispatcher.from_settings(get_settings(), cookies=request.cookies)
        checkout = dispatcher.track_initiate_checkout(
            CheckoutDetails(value=100, currency="MAD", slot_id="S1")
        )
        ...
        dispatcher.track_purchase(PurchaseDetails(booking_id="B1"), event_id=checkout.event_id)
        ```

    Must be used from inside a running event loop.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        pixel_transport: Optional[MetaPixelTransport] = None,
        cookies: Union[CookieSource, Callable[[], CookieSource]] = None,
        test_event_code: Optional[str] = None,
    ):
        self.relay_client = relay_client
        self.pixel_transport = pixel_transport
        self.test_event_code = test_event_code
        self._cookies = cookies
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        cookies: Union[CookieSource, Callable[[], CookieSource]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "TrackingDispatcher":
        return cls(
            relay_client=RelayClient(
                settings.RELAY_BASE_URL,
                api_key=settings.RELAY_API_KEY,
                http_client=http_client,
            ),
            pixel_transport=MetaPixelTransport(
                settings.META_PIXEL_ID,
                endpoint=settings.META_PIXEL_ENDPOINT,
                http_client=http_client,
            ),
            cookies=cookies,
            test_event_code=settings.TRACKING_TEST_EVENT_CODE,
        )

    def _current_cookies(self) -> CookieSource:
        return self._cookies() if callable(self._cookies) else self._cookies

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        # Keep a reference until done so the task is not garbage collected
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def emit(
        self,
        action: Union[TrackingAction, str],
        custom_data: Optional[Dict[str, Any]] = None,
        existing_event_id: Optional[str] = None,
        contact: Optional[ContactDetails] = None,
        page_url: Optional[str] = None,
    ) -> TrackingEmission:
        """Dispatch one action on both channels without waiting for either.

        Args:
            action: Meta event name (TrackingAction or custom string)
            custom_data: Commercial context (currency, value, contents, ...)
            existing_event_id: Identity minted by the companion action;
                mandatory for Purchase
            contact: Raw contact details, only sent on the relay channel
            page_url: Page where the action happened

        Returns:
            TrackingEmission with the shared event_id and the relay task

        Raises:
            ValueError: Purchase without the checkout event_id
        """
        event_name = action.value if isinstance(action, TrackingAction) else str(action)
        if event_name in {a.value for a in CORRELATED_ACTIONS} and not existing_event_id:
            raise ValueError(f"{event_name} must reuse the event_id minted at checkout")

        event_id = existing_event_id or mint_event_id()
        custom_data = dict(custom_data or {})
        contact = contact or ContactDetails()

        pixel_payload = dict(custom_data)
        pixel_task = None
        if self.pixel_transport is not None and self.pixel_transport.available:
            pixel_task = self._spawn(self._fire_pixel(event_name, pixel_payload, event_id))
        else:
            logger.debug(f"[PIXEL] Pixel not configured, skipping {event_name}")

        relay_body = _sparse({
            "event_name": event_name,
            "event_id": event_id,
            "event_source_url": page_url,
            "action_source": "website",
            "custom_data": custom_data or None,
            "external_id": contact.external_id,
            "email": contact.email,
            "phone": contact.phone,
            "test_event_code": self.test_event_code,
            **read_attribution_cookies(self._current_cookies()).as_dict(),
        })
        relay_task = self._spawn(self.relay_client.invoke(RELAY_FUNCTION_NAME, relay_body))
        relay_task.add_done_callback(self._log_relay_failure)

        logger.info(
            f"[TRACKING] Dispatched {event_name}",
            extra={"event_id": event_id, "pixel": pixel_task is not None},
        )
        return TrackingEmission(
            event_id=event_id,
            event_name=event_name,
            pixel_payload=pixel_payload,
            relay_body=relay_body,
            relay_task=relay_task,
            pixel_task=pixel_task,
        )

    async def _fire_pixel(self, event_name: str, payload: Dict[str, Any], event_id: str) -> None:
        # Best effort: the pixel must never fail the caller's flow
        try:
            await self.pixel_transport.track(event_name, payload, event_id)
        except Exception as e:
            logger.warning(f"[PIXEL] pixelTrack error for {event_name}: {e}")

    @staticmethod
    def _log_relay_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"[TRACKING] CAPI relay error: {error}")

    def track_initiate_checkout(
        self,
        details: CheckoutDetails,
        event_id: Optional[str] = None,
    ) -> TrackingEmission:
        return self.emit(
            TrackingAction.initiate_checkout,
            details.custom_data(),
            existing_event_id=event_id,
            contact=details.contact,
            page_url=details.page_url,
        )

    def track_purchase(self, details: PurchaseDetails, event_id: str) -> TrackingEmission:
        return self.emit(
            TrackingAction.purchase,
            details.custom_data(),
            existing_event_id=event_id,
            contact=details.contact,
            page_url=details.page_url,
        )

    def track_page_view(self, page_url: str) -> TrackingEmission:
        return self.emit(TrackingAction.page_view, page_url=page_url)

    async def drain(self) -> None:
        """Wait for every outstanding emission (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
