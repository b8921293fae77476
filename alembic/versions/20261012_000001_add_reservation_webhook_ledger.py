"""Add reservations/payments tables with the webhook dedup ledger.

Revision ID: 20261012_000001
Revises:
Create Date: 2026-10-12 12:00:00.000000

WHAT:
    Creates the booking tables the payment webhooks touch:
    - reservations: court/coach bookings, plus the ledger columns
      webhook_event_id and webhook_processed_at
    - payments: one row per provider payment, with the raw payload

    Also adds:
    - idx_reservations_webhook_event_id: partial unique index
      (only non-null ids), the actual dedup guarantee
    - check_webhook_already_processed(text) and
      update_reservation_webhook_metadata(uuid, text): database functions
      for callers that talk to Postgres directly (PostgreSQL only)

WHY:
    Lomi retries webhook deliveries. Recording the delivery id on the
    reservation, under a unique index, makes confirmation at-most-once
    across workers and restarts.

REFERENCES:
    - courtsignal/services/webhook_ledger.py
    - courtsignal/routers/lomi_webhooks.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261012_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Create reservations table
    # =========================================================================
    op.create_table(
        'reservations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('court_id', sa.String(), nullable=False),
        sa.Column('coach_id', sa.String(), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('total_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(), nullable=False, server_default='MAD'),
        sa.Column(
            'status',
            sa.Enum('pending', 'confirmed', 'cancelled', name='reservationstatusenum'),
            nullable=False,
            server_default='pending',
        ),
        sa.Column('user_name', sa.String(), nullable=True),
        sa.Column('user_email', sa.String(), nullable=True),
        sa.Column('user_phone', sa.String(), nullable=True),
        sa.Column('webhook_event_id', sa.String(), nullable=True),
        sa.Column('webhook_processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    # =========================================================================
    # STEP 2: Webhook dedup index
    # =========================================================================
    # WHAT: A delivery id can be held by at most one reservation
    # WHY: Concurrent replays race on this index, not on application locks
    op.create_index(
        'idx_reservations_webhook_event_id',
        'reservations',
        ['webhook_event_id'],
        unique=True,
        postgresql_where=sa.text('webhook_event_id IS NOT NULL'),
        sqlite_where=sa.text('webhook_event_id IS NOT NULL'),
    )

    # =========================================================================
    # STEP 3: Create payments table
    # =========================================================================
    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'reservation_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('reservations.id'),
            nullable=False,
        ),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('payment_method', sa.String(), nullable=False, server_default='online'),
        sa.Column('payment_provider', sa.String(), nullable=False, server_default='lomi'),
        sa.Column('provider_payment_id', sa.String(), nullable=False),
        sa.Column(
            'status',
            sa.Enum('pending', 'completed', 'failed', 'refunded', name='paymentstatusenum'),
            nullable=False,
            server_default='completed',
        ),
        sa.Column('payment_date', sa.DateTime(), nullable=True),
        sa.Column('provider_payload', sa.JSON(), nullable=True),
    )
    op.create_index('ix_payments_reservation_id', 'payments', ['reservation_id'])

    # =========================================================================
    # STEP 4: Ledger functions (PostgreSQL only)
    # =========================================================================
    if op.get_bind().dialect.name != 'postgresql':
        return

    op.execute("""
        CREATE OR REPLACE FUNCTION check_webhook_already_processed(p_webhook_event_id text)
        RETURNS boolean
        LANGUAGE sql STABLE
        AS $$
            SELECT EXISTS (
                SELECT 1 FROM reservations
                WHERE webhook_event_id = p_webhook_event_id
                  AND webhook_processed_at IS NOT NULL
            );
        $$;
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION update_reservation_webhook_metadata(
            p_reservation_id uuid,
            p_webhook_event_id text
        )
        RETURNS boolean
        LANGUAGE plpgsql
        AS $$
        BEGIN
            UPDATE reservations
            SET webhook_event_id = p_webhook_event_id,
                webhook_processed_at = now(),
                updated_at = now()
            WHERE id = p_reservation_id
              AND webhook_processed_at IS NULL;
            RETURN FOUND;
        EXCEPTION
            WHEN unique_violation THEN
                RETURN false;
        END;
        $$;
    """)


def downgrade() -> None:
    if op.get_bind().dialect.name == 'postgresql':
        op.execute("DROP FUNCTION IF EXISTS update_reservation_webhook_metadata(uuid, text)")
        op.execute("DROP FUNCTION IF EXISTS check_webhook_already_processed(text)")

    op.drop_index('ix_payments_reservation_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('idx_reservations_webhook_event_id', table_name='reservations')
    op.drop_table('reservations')

    if op.get_bind().dialect.name == 'postgresql':
        op.execute("DROP TYPE IF EXISTS paymentstatusenum")
        op.execute("DROP TYPE IF EXISTS reservationstatusenum")
