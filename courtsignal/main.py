"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import PlainTextResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_capi_service, get_settings  # noqa: E402
from .routers import lomi_webhooks as lomi_webhooks_router  # noqa: E402
from .routers import meta_capi as meta_capi_router  # noqa: E402
from .telemetry import init_sentry  # noqa: E402

# Import models so Alembic can discover metadata
from . import models  # noqa: F401,E402


class RelayCORSMiddleware(BaseHTTPMiddleware):
    """Own every non-POST method on the relay path, ahead of CORSMiddleware.

    OPTIONS answers "ok", anything else but POST is a 404; all responses
    carry the relay's CORS headers.

    WHY: The relay is called from every page of the booking site (and from
    preview deployments), so it always answers with wildcard CORS headers
    and its own "ok" preflight instead of the app-wide origin allow-list.
    """

    async def dispatch(self, request, call_next):
        if request.url.path != meta_capi_router.RELAY_PATH:
            return await call_next(request)

        if request.method == "OPTIONS":
            return meta_capi_router.add_cors_headers(PlainTextResponse("ok"))
        if request.method != "POST":
            return meta_capi_router.add_cors_headers(PlainTextResponse("Not Found", status_code=404))

        response = await call_next(request)
        return meta_capi_router.add_cors_headers(response)


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="courtsignal API",
        description="""
        Booking-funnel conversion tracking and payment webhooks.

        - **Meta CAPI relay** (`/functions/v1/meta-capi`): server half of the
          pixel + Conversions API pair, deduplicated by event_id
        - **Lomi webhooks** (`/webhooks/lomi`): idempotent payment confirmation
          guarded by the reservation webhook ledger
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-* from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    cors_origins_str = os.getenv("BACKEND_CORS_ORIGINS", settings.BACKEND_CORS_ORIGINS)
    allowed_origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Middleware runs in reverse order, so this runs BEFORE CORSMiddleware
    app.add_middleware(RelayCORSMiddleware)

    app.include_router(meta_capi_router.router)
    app.include_router(lomi_webhooks_router.router)

    @app.on_event("startup")
    async def warn_on_missing_configuration():
        # Building the relay logs a warning when pixel id / token are missing
        get_capi_service()
        if not settings.LOMI_WEBHOOK_SECRET:
            logger.warning("[LOMI_WEBHOOK] LOMI_WEBHOOK_SECRET is not set; webhooks will be rejected")

    @app.get("/health", tags=["Health"])
    def health():
        return {"status": "ok", "capi_configured": settings.capi_configured}

    return app


app = create_app()
