"""Lomi payment webhooks.

WHAT:
    Confirms reservations when Lomi reports a successful payment:
    PAYMENT_SUCCEEDED, CHECKOUT_COMPLETED (or checkout.completed).

WHY:
    Lomi delivers webhooks at least once and may replay them. Booking state
    must change at most once per delivery, so every delivery goes through
    the webhook dedup ledger before and while mutating the reservation.

FLOW:
    1. Verify X-Lomi-Signature (hex HMAC-SHA256 of the raw body)
    2. Parse reservation_id / amount / currency from the event
    3. Ledger check: already processed -> 200 duplicate
    4. Record payment + confirm reservation + mark processed (one transaction)
    5. Lost a race with a concurrent replay -> 200 duplicate, nothing persisted

REFERENCES:
    - courtsignal/services/webhook_ledger.py
"""

import hashlib
import hmac
import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from courtsignal.database import get_db
from courtsignal.deps import Settings, get_settings
from courtsignal.models import Payment, PaymentStatusEnum, Reservation, ReservationStatusEnum
from courtsignal.schemas import WebhookAck
from courtsignal.services.webhook_ledger import MarkOutcome, WebhookLedger
from courtsignal.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/lomi", tags=["Lomi Webhooks"])

SIGNATURE_HEADER = "X-Lomi-Signature"
EVENT_ID_HEADER = "X-Lomi-Event-Id"

CHECKOUT_COMPLETED_EVENTS = {"CHECKOUT_COMPLETED", "checkout.completed"}
PAYMENT_SUCCEEDED_EVENTS = {"PAYMENT_SUCCEEDED"}


# =============================================================================
# SIGNATURE VERIFICATION
# =============================================================================

def verify_lomi_signature(request_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """Verify that a webhook request came from Lomi.

    Args:
        request_body: Raw request body bytes
        signature_header: X-Lomi-Signature header value (hex digest)
        secret: LOMI_WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret:
        logger.error("[LOMI_WEBHOOK] LOMI_WEBHOOK_SECRET not configured")
        return False

    if not signature_header:
        logger.warning("[LOMI_WEBHOOK] Missing signature header")
        return False

    expected = hmac.new(secret.encode("utf-8"), request_body, hashlib.sha256).hexdigest()

    # Constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected, signature_header.strip())
    if not is_valid:
        logger.warning("[LOMI_WEBHOOK] Invalid signature")
    return is_valid


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================

def _extract_payment_fields(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Pull reservation and payment identifiers out of the event data."""
    metadata = data.get("metadata") or {}
    if event_type in CHECKOUT_COMPLETED_EVENTS:
        return {
            "reservation_id": metadata.get("reservation_id"),
            "checkout_session_id": data.get("id"),
            "payment_id": data.get("transaction_id"),
            "amount": data.get("amount"),
            "currency": data.get("currency_code"),
        }
    # gross_amount may be present but null
    gross_amount = data.get("gross_amount")
    return {
        "reservation_id": metadata.get("reservation_id"),
        "checkout_session_id": None,
        "payment_id": data.get("transaction_id"),
        "amount": gross_amount if gross_amount is not None else data.get("amount"),
        "currency": data.get("currency_code"),
    }


def resolve_webhook_event_id(
    payload: Dict[str, Any],
    headers,
    event_type: str,
    fields: Dict[str, Any],
    body: bytes = b"",
) -> str:
    """Delivery identifier used as the dedup key.

    Lomi's event id when present, else the delivery header, else the
    event type plus the payment (or checkout session) id. With none of
    those, the SHA-256 of the signed body: byte-identical retries still
    dedup, distinct payments never share a key.
    """
    event_id = payload.get("id") or headers.get(EVENT_ID_HEADER)
    if event_id:
        return str(event_id)
    provider_id = fields.get("payment_id") or fields.get("checkout_session_id")
    if provider_id:
        return f"{event_type}:{provider_id}"
    return f"{event_type}:sha256:{hashlib.sha256(body).hexdigest()}"


def _ack(duplicate: bool = False, message: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=WebhookAck(duplicate=duplicate, message=message).model_dump(),
    )


# =============================================================================
# ENDPOINT
# =============================================================================

@router.post("", response_model=WebhookAck)
async def handle_lomi_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Handle a Lomi payment webhook idempotently.

    RESPONSES:
        200 processed, duplicate, ignored event type, or unknown reservation
        400 bad signature, bad JSON, or missing reservation/amount/currency
        500 unexpected failure (Lomi retries; the ledger absorbs the replay)
    """
    body = await request.body()
    if not verify_lomi_signature(body, request.headers.get(SIGNATURE_HEADER), settings.LOMI_WEBHOOK_SECRET):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook verification failed"
        )

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    event_type = payload.get("event")
    data = payload.get("data") or {}
    logger.info(f"[LOMI_WEBHOOK] Received event {event_type}")

    if event_type not in CHECKOUT_COMPLETED_EVENTS | PAYMENT_SUCCEEDED_EVENTS or not isinstance(data, dict) or not data:
        return _ack(message="Event type not handled")

    fields = _extract_payment_fields(event_type, data)
    if not fields["reservation_id"]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing reservation_id in Lomi webhook metadata"
        )
    if fields["amount"] is None or not fields["currency"]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing amount or currency in Lomi webhook payload"
        )
    try:
        reservation_id = uuid.UUID(str(fields["reservation_id"]))
        amount = Decimal(str(fields["amount"]))
    except (ValueError, InvalidOperation):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid reservation_id or amount in Lomi webhook payload"
        )

    webhook_event_id = resolve_webhook_event_id(payload, request.headers, event_type, fields, body)
    ledger = WebhookLedger(db)

    try:
        if ledger.check_processed(webhook_event_id):
            logger.info(f"[LOMI_WEBHOOK] Duplicate delivery {webhook_event_id}, skipping")
            return _ack(duplicate=True, message="Webhook already processed")

        reservation = db.get(Reservation, reservation_id)
        if reservation is None:
            # Acknowledge so Lomi stops retrying for a vanished booking
            logger.warning(f"[LOMI_WEBHOOK] Reservation not found: {reservation_id}")
            return _ack(message="Reservation not found, webhook acknowledged")

        # XOF / MAD amounts arrive in base units, no cents conversion
        db.add(Payment(
            reservation_id=reservation.id,
            amount=amount,
            currency=fields["currency"],
            payment_method="online",
            payment_provider="lomi",
            provider_payment_id=fields["payment_id"] or fields["checkout_session_id"] or "N/A",
            status=PaymentStatusEnum.completed,
            provider_payload=payload,
        ))
        reservation.status = ReservationStatusEnum.confirmed
        db.flush()

        outcome = ledger.mark_processed(reservation.id, webhook_event_id)
    except Exception as e:
        db.rollback()
        logger.exception(f"[LOMI_WEBHOOK] Error processing {webhook_event_id}")
        capture_exception(e, extra={"webhook_event_id": webhook_event_id})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error processing webhook event."},
        )

    if outcome is MarkOutcome.marked:
        logger.info(f"[LOMI_WEBHOOK] Payment for reservation {reservation_id} processed")
        return _ack(message="Webhook processed")
    if outcome is MarkOutcome.already_processed:
        return _ack(duplicate=True, message="Webhook already processed")
    return _ack(message="Reservation not found, webhook acknowledged")
