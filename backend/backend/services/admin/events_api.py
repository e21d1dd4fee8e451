from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.deps import get_actor, get_dispatcher, get_orchestrator
from app.core.request_context import get_request_id
from app.db.models.audit import AuditLog
from app.db.models.common import utcnow
from app.db.session import get_db
from app.events.dispatcher import NotificationDispatcher
from app.events.outbox import OutboxEvent
from services.lifecycle.orchestrator import LifecycleOrchestrator


router = APIRouter(prefix="/admin/events", tags=["admin_events"])


def _event_out(e: OutboxEvent) -> dict:
    return {
        "id": e.id,
        "topic": e.topic,
        "entity_type": e.entity_type,
        "entity_id": e.entity_id,
        "payload": e.payload or {},
        "attempt_count": int(e.attempt_count or 0),
        "last_error": e.last_error,
        "delivered": bool(e.delivered),
        "dead": bool(e.dead),
        "available_at": e.available_at.isoformat() if e.available_at else None,
        "delivered_at": e.delivered_at.isoformat() if e.delivered_at else None,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


@router.get("/outbox")
def list_outbox(state: str | None = None, topic: str | None = None, limit: int = 200, db: Session = Depends(get_db)):
    """state: pending | delivered | dead"""
    q = db.query(OutboxEvent)
    if state == "pending":
        q = q.filter(OutboxEvent.delivered == False, OutboxEvent.dead == False)  # noqa: E712
    elif state == "delivered":
        q = q.filter(OutboxEvent.delivered == True)  # noqa: E712
    elif state == "dead":
        q = q.filter(OutboxEvent.dead == True)  # noqa: E712
    elif state is not None:
        raise HTTPException(422, "state must be one of pending, delivered, dead")
    if topic:
        q = q.filter(OutboxEvent.topic == topic)
    return [_event_out(e) for e in q.order_by(OutboxEvent.created_at.desc()).limit(limit).all()]


@router.post("/outbox/{event_id}/requeue")
def requeue_event(event_id: str, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    e = db.query(OutboxEvent).filter(OutboxEvent.id == event_id).first()
    if not e:
        raise HTTPException(404, "Unknown event")
    if e.delivered and not e.last_error:
        raise HTTPException(409, "event already delivered")
    e.dead = False
    e.delivered = False
    e.delivered_at = None
    e.attempt_count = 0
    e.available_at = utcnow()
    audit(db, actor=actor, action="outbox.requeue", entity_type="outbox_event", entity_id=e.id,
          payload={"topic": e.topic}, request_id=get_request_id())
    db.commit()
    return {"ok": True, "event": _event_out(e)}


@router.post("/dispatch")
async def dispatch_now(dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    report = await dispatcher.dispatch_pending()
    return {"ok": True, **asdict(report), "total": report.total}


@router.post("/reconcile")
def reconcile(
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    return {"ok": True, **asdict(orch.reconcile(db, actor=actor))}


@router.get("/audit")
def list_audit(
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 200,
    db: Session = Depends(get_db),
):
    q = db.query(AuditLog)
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)
    rows = q.order_by(AuditLog.created_at.desc()).limit(limit).all()
    return [
        {
            "id": r.id,
            "actor": r.actor,
            "action": r.action,
            "entity_type": r.entity_type,
            "entity_id": r.entity_id,
            "from_status": r.from_status,
            "to_status": r.to_status,
            "request_id": r.request_id,
            "payload": r.payload or {},
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]
