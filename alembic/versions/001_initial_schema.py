"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

Creates the booking coordinator tables:
- Bookings (aggregate rows with the optimistic version column)
- State history and applied event keys (append-only)
- Directive ledger
- Deferred event journal
"""

from typing import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create all database tables."""

    # ==================== BOOKINGS ====================
    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", sa.String(64), nullable=False, index=True),
        sa.Column("builder_id", sa.String(64), nullable=False, index=True),
        sa.Column("session_type_id", sa.String(64), nullable=False),
        sa.Column("client_email", sa.String(255)),
        sa.Column("scheduled_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("client_timezone", sa.String(64), default="UTC"),
        sa.Column("builder_timezone", sa.String(64)),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), default="usd"),
        sa.Column("state", sa.String(20), nullable=False, default="PENDING", index=True),
        sa.Column("payment_state", sa.String(20), nullable=False, default="UNPAID"),
        sa.Column("external_scheduling_ref", sa.String(255), unique=True),
        sa.Column("external_payment_ref", sa.String(255), index=True),
        sa.Column("payment_ref_replacements", sa.Integer, default=0),
        sa.Column("cancelled_by", sa.String(10)),
        sa.Column("cancel_reason", sa.Text),
        sa.Column("refund_amount", sa.Integer, default=0),
        sa.Column("refund_pending_amount", sa.Integer, default=0),
        sa.Column("anomaly", sa.Text),
        sa.Column("anomaly_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer, nullable=False, default=1),
        sa.Column("last_transition_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_bookings_state_last_transition", "bookings", ["state", "last_transition_at"])

    op.create_table(
        "booking_state_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id"), nullable=False, index=True),
        sa.Column("seq", sa.Integer, nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("payment_state", sa.String(20), nullable=False),
        sa.Column("entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("triggering_event", sa.String(50), nullable=False),
        sa.Column("event_source_id", sa.String(255)),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("details", postgresql.JSONB),
        sa.UniqueConstraint("booking_id", "seq", name="uq_history_booking_seq"),
    )

    op.create_table(
        "booking_applied_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id"), nullable=False, index=True),
        sa.Column("event_key", sa.String(255), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("booking_id", "event_key", name="uq_applied_booking_event"),
    )

    # ==================== DIRECTIVES ====================
    op.create_table(
        "booking_directives",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id"), nullable=False, index=True),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=False),
        sa.Column("directive", sa.String(40), nullable=False),
        sa.Column("emitted_seq", sa.Integer, default=0),
        sa.Column("status", sa.String(20), default="PENDING", index=True),
        sa.Column("attempts", sa.Integer, default=0),
        sa.Column("last_error", sa.Text),
        sa.Column("result", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
    )

    # ==================== DEFERRED EVENTS ====================
    op.create_table(
        "deferred_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("idempotency_key", sa.String(255), unique=True, nullable=False),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("external_ref", sa.String(255), index=True),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("event", postgresql.JSONB, nullable=False),
        sa.Column("reason", sa.String(40), nullable=False),
        sa.Column("priority", sa.Integer, default=0),
        sa.Column("status", sa.String(20), default="QUEUED"),
        sa.Column("attempts", sa.Integer, default=0),
        sa.Column("last_error", sa.Text),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_deferred_events_status_next_attempt", "deferred_events", ["status", "next_attempt_at"]
    )


def downgrade() -> None:
    """Drop all database tables in reverse order."""
    op.drop_table("deferred_events")
    op.drop_table("booking_directives")
    op.drop_table("booking_applied_events")
    op.drop_table("booking_state_history")
    op.drop_table("bookings")
