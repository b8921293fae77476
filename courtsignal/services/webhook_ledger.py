"""Webhook dedup ledger on the reservations table.

WHAT:
    Makes payment-webhook processing idempotent across replayed deliveries.
    Two operations:
    - check_processed(webhook_event_id): has this delivery already been applied?
    - mark_processed(reservation_id, webhook_event_id): claim the delivery for
      a reservation and commit the caller's unit of work

WHY:
    Payment providers deliver webhooks at least once, possibly concurrently
    from several workers. The dedup key is the partial unique index on
    `reservations.webhook_event_id`, not an application lock, so it holds
    across process crashes and multiple server processes.

STATE MACHINE (per reservation):
    unprocessed (webhook_processed_at IS NULL)
        -> processed (webhook_processed_at set, terminal, immutable)

REFERENCES:
    - courtsignal/models.py (Reservation ledger columns and index)
    - courtsignal/routers/lomi_webhooks.py (consumer)
"""

import enum
import logging
import uuid
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from courtsignal.models import Reservation

logger = logging.getLogger(__name__)


class MarkOutcome(str, enum.Enum):
    """Result of mark_processed. None of these is an error for the caller."""
    marked = "marked"
    already_processed = "already_processed"
    entity_not_found = "entity_not_found"


def _as_uuid(value: Union[str, uuid.UUID]) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class WebhookLedger:
    """Persisted at-most-once guard for webhook deliveries.

    The ledger owns the transaction boundary of `mark_processed`: on success
    it commits everything pending in the session (so the state mutation and
    the claim land together); on any other outcome it rolls back.
    """

    def __init__(self, db: Session):
        self.db = db

    def check_processed(self, webhook_event_id: Optional[str]) -> bool:
        """True iff a reservation holds this delivery id with a processed timestamp."""
        if not webhook_event_id:
            return False

        stmt = select(
            exists().where(
                Reservation.webhook_event_id == webhook_event_id,
                Reservation.webhook_processed_at.is_not(None),
            )
        )
        return bool(self.db.execute(stmt).scalar())

    def mark_processed(
        self,
        reservation_id: Union[str, uuid.UUID],
        webhook_event_id: str,
    ) -> MarkOutcome:
        """Record that `webhook_event_id` was applied to `reservation_id`.

        The update only matches a reservation that is still unprocessed, so
        `webhook_processed_at` is written exactly once. A second reservation
        claiming the same delivery id violates the unique index and is rolled
        back atomically.

        Returns:
            MarkOutcome.marked: claim committed
            MarkOutcome.already_processed: replay or lost race, rolled back
            MarkOutcome.entity_not_found: reservation vanished, rolled back
        """
        entity_id = _as_uuid(reservation_id)
        if entity_id is None:
            logger.warning(
                "[WEBHOOK_LEDGER] Invalid reservation id during mark_processed",
                extra={"reservation_id": str(reservation_id), "webhook_event_id": webhook_event_id},
            )
            self.db.rollback()
            return MarkOutcome.entity_not_found

        now = datetime.utcnow()
        stmt = (
            update(Reservation)
            .where(
                Reservation.id == entity_id,
                Reservation.webhook_processed_at.is_(None),
            )
            .values(
                webhook_event_id=webhook_event_id,
                webhook_processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        try:
            result = self.db.execute(stmt)
            if result.rowcount == 1:
                self.db.commit()
                logger.info(
                    f"[WEBHOOK_LEDGER] Marked webhook {webhook_event_id} as processed",
                    extra={"reservation_id": str(entity_id)},
                )
                return MarkOutcome.marked
        except IntegrityError:
            # Another reservation already holds this delivery id
            self.db.rollback()
            logger.info(
                f"[WEBHOOK_LEDGER] Webhook {webhook_event_id} already claimed by another reservation",
                extra={"reservation_id": str(entity_id)},
            )
            return MarkOutcome.already_processed

        holder = self.db.execute(
            select(Reservation.webhook_event_id).where(Reservation.id == entity_id)
        ).first()
        self.db.rollback()

        if holder is None:
            logger.warning(
                f"[WEBHOOK_LEDGER] Reservation {entity_id} not found during mark_processed",
                extra={"webhook_event_id": webhook_event_id},
            )
            return MarkOutcome.entity_not_found

        logger.info(
            f"[WEBHOOK_LEDGER] Reservation {entity_id} already processed",
            extra={
                "webhook_event_id": webhook_event_id,
                "processed_by": holder.webhook_event_id,
                "replay": holder.webhook_event_id == webhook_event_id,
            },
        )
        return MarkOutcome.already_processed
