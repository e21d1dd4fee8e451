from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.events.outbox import OutboxEvent
from app.db.models.common import utcnow


def publish(
    db: Session,
    topic: str,
    payload: dict,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    available_at: datetime | None = None,
) -> OutboxEvent:
    """Publish an event by writing to the transactional outbox.

    The row is only added to the session; it commits (or rolls back) together
    with the mutation that produced it.
    """
    evt = OutboxEvent(
        topic=topic,
        payload=payload or {},
        entity_type=entity_type,
        entity_id=entity_id,
        available_at=available_at or utcnow(),
        delivered=False,
        dead=False,
        attempt_count=0,
    )
    db.add(evt)
    return evt
