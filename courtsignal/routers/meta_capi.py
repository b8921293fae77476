"""Meta CAPI relay endpoint.

WHAT:
    HTTP surface of the server-side tracking channel. The tracking dispatcher
    invokes it by function name (`meta-capi`) with a TrackingEvent body plus
    raw contact fields and attribution cookies.

WHY:
    The relay is called from browsers on any page of the booking site, so it
    answers CORS preflights itself and returns JSON errors the client can log.

RESPONSES:
    200 {"ok": true, "fb": <Meta response>}
    400 {"error": "<message>"}                       missing event_name / event_id
    502 {"error": "Facebook API error", "details": <Meta error body>}
    500 {"error": "<message>"}                       unexpected failure
    OPTIONS -> 200 "ok", any other method -> 404 (both answered by
    RelayCORSMiddleware in courtsignal/main.py)

REFERENCES:
    - courtsignal/services/meta_capi_service.py
"""

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from courtsignal.deps import get_capi_service
from courtsignal.schemas import ErrorResponse, MetaCAPIRelayResponse
from courtsignal.services.meta_capi_service import (
    RELAY_FUNCTION_NAME,
    MetaCAPIService,
    MetaCAPIUpstreamError,
    MetaCAPIValidationError,
)
from courtsignal.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/functions/v1", tags=["Meta CAPI"])

RELAY_PATH = f"/functions/v1/{RELAY_FUNCTION_NAME}"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Max-Age": "86400",  # Cache preflight for 24h
}


def add_cors_headers(response: Response) -> Response:
    """Add CORS headers to response for the relay endpoint."""
    response.headers.update(CORS_HEADERS)
    return response


def _json(status_code: int, content: dict) -> Response:
    return add_cors_headers(JSONResponse(status_code=status_code, content=content))


@router.post(
    f"/{RELAY_FUNCTION_NAME}",
    response_model=MetaCAPIRelayResponse,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def relay_meta_capi(
    request: Request,
    service: MetaCAPIService = Depends(get_capi_service),
):
    """Relay one tracking event to Meta Conversions API.

    FLOW:
        1. Parse JSON body
        2. Validate event_name / event_id (400 on failure, nothing sent)
        3. Enrich with IP / user agent, hash PII, post to Meta
        4. Surface Meta errors as 502 with Meta's body attached
    """
    try:
        body = await request.json()
    except ValueError:
        return _json(400, {"error": "Invalid JSON body"})

    try:
        result = await service.relay(body, headers=request.headers)
    except MetaCAPIValidationError as e:
        logger.info(f"[META_CAPI] Rejected request: {e}")
        return _json(400, {"error": str(e)})
    except MetaCAPIUpstreamError as e:
        return _json(502, {"error": "Facebook API error", "details": e.details})
    except Exception as e:
        logger.exception("[META_CAPI] Handler error")
        capture_exception(e, extra={"component": "meta_capi_relay"})
        return _json(500, {"error": str(e) or "unknown error"})

    return _json(200, result)

