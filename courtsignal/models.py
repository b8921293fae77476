"""SQLAlchemy ORM models and enums.

This module defines the slice of the booking schema the attribution and
payment-webhook flows touch: reservations (which carry the webhook dedup
ledger columns) and the payments recorded from Lomi webhooks.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, ForeignKey, Numeric, JSON, Index, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ReservationStatusEnum(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    cancelled = "cancelled"


class PaymentStatusEnum(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


# Models --------------------------------------------------------

class Reservation(Base):
    """A court (or coach) booking.

    WHAT: The domain entity a payment webhook confirms.
    WHY: Also hosts the webhook dedup ledger. `webhook_event_id` is unique
         among non-null values (partial unique index) and
         `webhook_processed_at` is written once, on first successful
         processing, and never changed afterwards.
    REFERENCES:
        - courtsignal/services/webhook_ledger.py
        - alembic/versions/20261012_000001_add_reservation_webhook_ledger.py
    """
    __tablename__ = "reservations"
    __table_args__ = (
        Index(
            "idx_reservations_webhook_event_id",
            "webhook_event_id",
            unique=True,
            postgresql_where=text("webhook_event_id IS NOT NULL"),
            sqlite_where=text("webhook_event_id IS NOT NULL"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    court_id = Column(String, nullable=False)
    coach_id = Column(String, nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False, default="MAD")
    status = Column(Enum(ReservationStatusEnum), nullable=False, default=ReservationStatusEnum.pending)

    # Guest contact details (bookings without an account)
    user_name = Column(String, nullable=True)
    user_email = Column(String, nullable=True)
    user_phone = Column(String, nullable=True)

    # Webhook dedup ledger
    webhook_event_id = Column(String, nullable=True)
    webhook_processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    payments = relationship("Payment", back_populates="reservation")

    def __str__(self):
        return f"{self.court_id} - {self.start_time} ({self.status})"


class Payment(Base):
    """Payment recorded from a provider webhook.

    WHAT: One row per successful Lomi payment for a reservation
    WHY: Audit trail; the full provider payload is kept for diagnosis
    """
    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reservation_id = Column(UUID(as_uuid=True), ForeignKey("reservations.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False)
    payment_method = Column(String, nullable=False, default="online")
    payment_provider = Column(String, nullable=False, default="lomi")
    provider_payment_id = Column(String, nullable=False)
    status = Column(Enum(PaymentStatusEnum), nullable=False, default=PaymentStatusEnum.completed)
    payment_date = Column(DateTime, default=datetime.utcnow)
    provider_payload = Column(JSON, nullable=True)

    reservation = relationship("Reservation", back_populates="payments")

    def __str__(self):
        return f"{self.payment_provider}:{self.provider_payment_id} - {self.amount} {self.currency}"
