"""Deferred event journal model."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from booking_coordinator.database import Base
from booking_coordinator.models.types import JSONType, UTCDateTime


class DeferredEvent(Base):
    """Inbound event waiting for a prerequisite, a matching booking or a retry."""

    __tablename__ = "deferred_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    external_ref: Mapped[str | None] = mapped_column(String(255), index=True)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    event: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    reason: Mapped[str] = mapped_column(String(40), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(
        String(20), default="QUEUED"
    )  # QUEUED, APPLIED, REJECTED, EXHAUSTED
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_deferred_events_status_next_attempt", "status", "next_attempt_at"),
    )
