from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.deps import get_actor, get_orchestrator, kick_dispatcher
from app.db.session import get_db
from app.db.models.feedback import ProductionFeedback, QualityCheck
from services.lifecycle.orchestrator import LifecycleOrchestrator, LifecycleResult
from services.lifecycle.status import CheckType, QualityResult

router = APIRouter(prefix="/feedback", tags=["feedback"])


# ---- Schemas ----
class FeedbackIn(BaseModel):
    batch_id: str | None = None
    product_name: str | None = Field(default=None, max_length=255)
    notes: str | None = None


class QualityCheckIn(BaseModel):
    check_name: str = Field(..., max_length=255)
    check_type: CheckType = CheckType.OTHER
    result: QualityResult = QualityResult.PENDING
    step_id: str | None = None
    inspector: str | None = Field(default=None, max_length=128)
    notes: str | None = None


class QualityChecksIn(BaseModel):
    checks: list[QualityCheckIn] = Field(..., min_length=1)


class QualityCheckUpdateIn(BaseModel):
    result: QualityResult | None = None
    check_name: str | None = Field(default=None, max_length=255)
    notes: str | None = None


# ---- Serializers ----
def check_out(c: QualityCheck) -> dict:
    return {
        "id": c.id,
        "check_number": c.check_number,
        "feedback_id": c.feedback_id,
        "step_id": c.step_id,
        "check_name": c.check_name,
        "check_type": c.check_type.value,
        "result": c.result.value,
        "inspector": c.inspector,
        "notes": c.notes,
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }


def feedback_out(f: ProductionFeedback, *, with_checks: bool = False) -> dict:
    out = {
        "id": f.id,
        "feedback_number": f.feedback_number,
        "batch_id": f.batch_id,
        "product_name": f.product_name,
        "quality_score": f.quality_score,
        "notes": f.notes,
    }
    if with_checks:
        out["checks"] = [check_out(c) for c in f.checks]
    return out


def _events(result: LifecycleResult) -> list[str]:
    return [e.name for e in result.events]


# ---- Feedback ----
@router.post("")
def create_feedback(
    payload: FeedbackIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.create_feedback(db, actor=actor, **payload.model_dump())
    return {"ok": True, "feedback": feedback_out(result.entity)}


@router.get("/{feedback_id}")
def get_feedback(feedback_id: str, db: Session = Depends(get_db), orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return feedback_out(orch.get_feedback(db, feedback_id), with_checks=True)


@router.get("/{feedback_id}/summary")
def quality_summary(feedback_id: str, db: Session = Depends(get_db), orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return orch.quality_summary(db, feedback_id).as_dict()


# ---- Quality checks ----
@router.get("/{feedback_id}/checks")
def list_quality_checks(feedback_id: str, db: Session = Depends(get_db), orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return [check_out(c) for c in orch.get_feedback(db, feedback_id).checks]


@router.post("/{feedback_id}/checks", dependencies=[Depends(kick_dispatcher)])
def record_quality_check(
    feedback_id: str,
    payload: QualityCheckIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.record_quality_check(db, feedback_id, actor=actor, **payload.model_dump())
    feedback = result.changed[0]
    return {
        "ok": True,
        "check": check_out(result.entity),
        "feedback": feedback_out(feedback),
        "events": _events(result),
    }


@router.post("/{feedback_id}/checks/bulk", dependencies=[Depends(kick_dispatcher)])
def record_quality_checks(
    feedback_id: str,
    payload: QualityChecksIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.record_quality_checks(db, feedback_id, [c.model_dump() for c in payload.checks], actor=actor)
    return {
        "ok": True,
        "checks": [check_out(c) for c in result.entity],
        "feedback": feedback_out(result.changed[0]),
        "events": _events(result),
    }


@router.patch("/checks/{check_id}", dependencies=[Depends(kick_dispatcher)])
def update_quality_check(
    check_id: str,
    payload: QualityCheckUpdateIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.update_quality_check(db, check_id, actor=actor, **payload.model_dump())
    return {
        "ok": True,
        "check": check_out(result.entity),
        "feedback": feedback_out(result.changed[0]),
        "events": _events(result),
    }


@router.delete("/checks/{check_id}")
def delete_quality_check(
    check_id: str,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.delete_quality_check(db, check_id, actor=actor)
    return {"ok": True, "deleted": True, "feedback": feedback_out(result.entity)}
