from __future__ import annotations

import enum

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.logger import get_logger
from app.events.bus import publish
from services.lifecycle.events import DomainEvent
from services.lifecycle.status import ensure_transition

log = get_logger("lifecycle")


class LifecycleUnitOfWork:
    """One local transaction for a lifecycle use case.

    Status writes go through ``transition`` so each one is validated (unless it
    is a cascade derivation), audited and logged. Domain events collected with
    ``emit`` are written to the outbox right before the commit, inside the same
    transaction. Any exception rolls everything back.
    """

    def __init__(self, db: Session, *, actor: str = "system", request_id: str | None = None):
        self.db = db
        self.actor = actor
        self.request_id = request_id
        self.events: list[DomainEvent] = []
        self.changed: dict[str, object] = {}

    def __enter__(self) -> LifecycleUnitOfWork:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.db.rollback()
            return
        self.commit()

    def transition(self, entity: str, obj, target: enum.Enum, *, validate: bool = True, reason: str | None = None) -> None:
        current = obj.status
        if validate:
            ensure_transition(entity, current, target)
        obj.status = target
        audit(
            self.db,
            actor=self.actor,
            action=f"{entity}.{target.value}",
            entity_type=entity,
            entity_id=obj.id,
            from_status=current.value if current is not None else None,
            to_status=target.value,
            payload={"reason": reason} if reason else None,
            request_id=self.request_id,
        )
        self.changed[f"{entity}:{obj.id}"] = obj
        log.info(
            "%s %s: %s -> %s",
            entity,
            obj.id,
            current.value if current is not None else None,
            target.value,
            extra={"entity": entity, "entity_id": obj.id, "request_id": self.request_id},
        )

    def record(self, action: str, entity: str, obj, payload: dict | None = None) -> None:
        """Audit a mutation that does not change status (creation, edits, deletion)."""
        audit(
            self.db,
            actor=self.actor,
            action=action,
            entity_type=entity,
            entity_id=obj.id,
            payload=payload,
            request_id=self.request_id,
        )

    def emit(self, event: DomainEvent) -> None:
        self.events.append(event)

    def commit(self) -> None:
        for event in self.events:
            for topic, payload in event.notifications():
                publish(self.db, topic, payload, entity_type=event.entity_type, entity_id=event.entity_id)
        self.db.commit()
