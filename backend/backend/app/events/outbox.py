from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasCreatedAt, HasId, utcnow


class OutboxEvent(Base, HasId, HasCreatedAt):
    """Transactional outbox.

    Rows are inserted in the same session as the lifecycle mutation that
    produced them, so an event exists if and only if its transition committed.
    The dispatcher (see app.events.dispatcher) delivers them to peer services.
    """

    __tablename__ = "plc_outbox_event"

    topic: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Delivery state
    available_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    dead: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


Index("ix_plc_outbox_topic_created", OutboxEvent.topic, OutboxEvent.created_at)
Index("ix_plc_outbox_delivery", OutboxEvent.delivered, OutboxEvent.dead, OutboxEvent.available_at)
