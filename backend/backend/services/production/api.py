from __future__ import annotations

from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.deps import get_actor, get_orchestrator, kick_dispatcher, naive_utc
from app.db.session import get_db
from app.db.models.production import MaterialAllocation, ProductionBatch, ProductionRequest, ProductionStep
from services.lifecycle.orchestrator import LifecycleOrchestrator, LifecycleResult
from services.lifecycle.status import BatchStatus, RequestPriority, RequestStatus

router = APIRouter(prefix="/production", tags=["production"])


# ---- Schemas ----
class RequestIn(BaseModel):
    product_name: str = Field(..., max_length=100)
    quantity: int = Field(..., ge=1)
    priority: RequestPriority = RequestPriority.NORMAL
    due_date: date | None = None
    customer_id: str | None = Field(default=None, max_length=64)
    specifications: dict = Field(default_factory=dict)
    request_number: str | None = Field(default=None, max_length=50)


class CancelIn(BaseModel):
    reason: str | None = None


class StepIn(BaseModel):
    step_name: str = Field(..., max_length=100)
    step_order: int | None = Field(default=None, ge=1)
    machine_type: str | None = Field(default=None, max_length=50)
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    machine_id: str | None = None
    notes: str | None = None


class MaterialIn(BaseModel):
    material_id: str = Field(..., max_length=64)
    quantity_required: float = Field(..., gt=0)
    unit_of_measure: str = Field(..., max_length=20)
    notes: str | None = None


class BatchIn(BaseModel):
    quantity: int = Field(..., ge=1)
    batch_number: str | None = Field(default=None, max_length=50)
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    notes: str | None = None
    steps: list[StepIn] = Field(default_factory=list)
    materials: list[MaterialIn] = Field(default_factory=list)


class BatchStatusIn(BaseModel):
    status: BatchStatus
    notes: str | None = None


class StepUpdateIn(BaseModel):
    step_name: str | None = Field(default=None, max_length=100)
    machine_type: str | None = Field(default=None, max_length=50)
    machine_id: str | None = None
    operator_id: str | None = None
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    notes: str | None = None


class StartStepIn(BaseModel):
    operator_id: str | None = None
    machine_id: str | None = None


class StepNotesIn(BaseModel):
    notes: str | None = None


class AllocateIn(BaseModel):
    quantity: float


class RequiredIn(BaseModel):
    quantity_required: float


# ---- Serializers ----
def _iso(value) -> str | None:
    return value.isoformat() if value else None


def request_out(r: ProductionRequest, *, with_batches: bool = False) -> dict:
    out = {
        "id": r.id,
        "request_number": r.request_number,
        "customer_id": r.customer_id,
        "product_name": r.product_name,
        "quantity": r.quantity,
        "priority": r.priority.value,
        "due_date": _iso(r.due_date),
        "specifications": r.specifications or {},
        "status": r.status.value,
        "created_at": _iso(r.created_at),
    }
    if with_batches:
        out["batches"] = [batch_out(b) for b in r.batches]
    return out


def step_out(s: ProductionStep) -> dict:
    return {
        "id": s.id,
        "batch_id": s.batch_id,
        "step_order": s.step_order,
        "step_name": s.step_name,
        "machine_type": s.machine_type,
        "machine_id": s.machine_id,
        "operator_id": s.operator_id,
        "scheduled_start": _iso(s.scheduled_start),
        "scheduled_end": _iso(s.scheduled_end),
        "actual_start": _iso(s.actual_start),
        "actual_end": _iso(s.actual_end),
        "duration_minutes": s.duration_minutes,
        "status": s.status.value,
        "notes": s.notes,
    }


def allocation_out(a: MaterialAllocation) -> dict:
    return {
        "id": a.id,
        "batch_id": a.batch_id,
        "material_id": a.material_id,
        "quantity_required": float(a.quantity_required),
        "quantity_allocated": float(a.quantity_allocated or 0),
        "unit_of_measure": a.unit_of_measure,
        "allocation_date": _iso(a.allocation_date),
        "status": a.status.value,
        "notes": a.notes,
    }


def batch_out(b: ProductionBatch, *, with_children: bool = False) -> dict:
    out = {
        "id": b.id,
        "batch_number": b.batch_number,
        "request_id": b.request_id,
        "quantity": b.quantity,
        "scheduled_start": _iso(b.scheduled_start),
        "scheduled_end": _iso(b.scheduled_end),
        "actual_start": _iso(b.actual_start),
        "actual_end": _iso(b.actual_end),
        "status": b.status.value,
        "notes": b.notes,
    }
    if with_children:
        out["steps"] = [step_out(s) for s in b.steps]
        out["allocations"] = [allocation_out(a) for a in b.allocations]
    return out


def _changed_out(obj) -> dict:
    if isinstance(obj, ProductionRequest):
        return {"entity": "request", **request_out(obj)}
    if isinstance(obj, ProductionBatch):
        return {"entity": "batch", **batch_out(obj)}
    if isinstance(obj, ProductionStep):
        return {"entity": "step", **step_out(obj)}
    if isinstance(obj, MaterialAllocation):
        return {"entity": "material_allocation", **allocation_out(obj)}
    return {"entity": type(obj).__name__, "id": getattr(obj, "id", None)}


def result_out(key: str, entity: dict, result: LifecycleResult) -> dict:
    """Mutated entity plus every other entity whose status moved in the same call."""
    return {
        "ok": True,
        key: entity,
        "changed": [_changed_out(obj) for obj in result.changed],
        "events": [e.name for e in result.events],
    }


# ---- Requests ----
@router.get("/requests")
def list_requests(
    status: RequestStatus | None = None,
    limit: int = 200,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    return [request_out(r) for r in orch.list_requests(db, status=status, limit=limit)]


@router.post("/requests", dependencies=[Depends(kick_dispatcher)])
def create_request(
    payload: RequestIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.create_request(db, actor=actor, **payload.model_dump())
    return result_out("request", request_out(result.entity), result)


@router.get("/requests/{request_id}")
def get_request(request_id: str, db: Session = Depends(get_db), orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return request_out(orch.get_request(db, request_id), with_batches=True)


@router.post("/requests/{request_id}/cancel", dependencies=[Depends(kick_dispatcher)])
def cancel_request(
    request_id: str,
    payload: CancelIn | None = None,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.cancel_request(db, request_id, reason=(payload.reason if payload else None), actor=actor)
    return result_out("request", request_out(result.entity), result)


@router.post("/requests/{request_id}/complete", dependencies=[Depends(kick_dispatcher)])
def complete_request(
    request_id: str,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.complete_request(db, request_id, actor=actor)
    return result_out("request", request_out(result.entity), result)


@router.delete("/requests/{request_id}")
def delete_request(
    request_id: str,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    orch.delete_request(db, request_id, actor=actor)
    return {"ok": True, "deleted": True}


# ---- Batches ----
@router.post("/requests/{request_id}/batches", dependencies=[Depends(kick_dispatcher)])
def create_batch(
    request_id: str,
    payload: BatchIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    steps = []
    for s in payload.steps:
        spec = s.model_dump()
        spec["scheduled_start"] = naive_utc(s.scheduled_start)
        spec["scheduled_end"] = naive_utc(s.scheduled_end)
        steps.append(spec)
    result = orch.create_batch(
        db,
        request_id,
        quantity=payload.quantity,
        batch_number=payload.batch_number,
        scheduled_start=naive_utc(payload.scheduled_start),
        scheduled_end=naive_utc(payload.scheduled_end),
        notes=payload.notes,
        steps=steps,
        materials=[m.model_dump() for m in payload.materials],
        actor=actor,
    )
    return result_out("batch", batch_out(result.entity, with_children=True), result)


@router.get("/batches")
def list_batches(
    request_id: str | None = None,
    status: BatchStatus | None = None,
    limit: int = 200,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    return [batch_out(b) for b in orch.list_batches(db, request_id=request_id, status=status, limit=limit)]


@router.get("/batches/{batch_id}")
def get_batch(batch_id: str, db: Session = Depends(get_db), orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return batch_out(orch.get_batch(db, batch_id), with_children=True)


@router.post("/batches/{batch_id}/status", dependencies=[Depends(kick_dispatcher)])
def update_batch_status(
    batch_id: str,
    payload: BatchStatusIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.update_batch_status(db, batch_id, payload.status, notes=payload.notes, actor=actor)
    return result_out("batch", batch_out(result.entity, with_children=True), result)


@router.delete("/batches/{batch_id}", dependencies=[Depends(kick_dispatcher)])
def delete_batch(
    batch_id: str,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    orch.delete_batch(db, batch_id, actor=actor)
    return {"ok": True, "deleted": True}


# ---- Steps ----
@router.post("/batches/{batch_id}/steps", dependencies=[Depends(kick_dispatcher)])
def add_step(
    batch_id: str,
    payload: StepIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    fields = payload.model_dump()
    fields["scheduled_start"] = naive_utc(payload.scheduled_start)
    fields["scheduled_end"] = naive_utc(payload.scheduled_end)
    result = orch.add_step(db, batch_id, actor=actor, **fields)
    return result_out("step", step_out(result.entity), result)


@router.get("/steps/{step_id}")
def get_step(step_id: str, db: Session = Depends(get_db), orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return step_out(orch.get_step(db, step_id))


@router.patch("/steps/{step_id}")
def update_step(
    step_id: str,
    payload: StepUpdateIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    fields = payload.model_dump(exclude_unset=True)
    for key in ("scheduled_start", "scheduled_end"):
        if key in fields:
            fields[key] = naive_utc(fields[key])
    result = orch.update_step(db, step_id, actor=actor, **fields)
    return result_out("step", step_out(result.entity), result)


@router.delete("/steps/{step_id}", dependencies=[Depends(kick_dispatcher)])
def delete_step(
    step_id: str,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.delete_step(db, step_id, actor=actor)
    return result_out("batch", batch_out(result.entity, with_children=True), result)


@router.post("/steps/{step_id}/schedule", dependencies=[Depends(kick_dispatcher)])
def schedule_step(
    step_id: str,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.schedule_step(db, step_id, actor=actor)
    return result_out("step", step_out(result.entity), result)


@router.post("/steps/{step_id}/start", dependencies=[Depends(kick_dispatcher)])
def start_step(
    step_id: str,
    payload: StartStepIn | None = None,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    payload = payload or StartStepIn()
    result = orch.start_step(db, step_id, operator_id=payload.operator_id, machine_id=payload.machine_id, actor=actor)
    return result_out("step", step_out(result.entity), result)


@router.post("/steps/{step_id}/{action}", dependencies=[Depends(kick_dispatcher)])
def finish_step(
    step_id: str,
    action: str,
    payload: StepNotesIn | None = None,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    """complete | fail | skip | cancel"""
    handlers = {
        "complete": orch.complete_step,
        "fail": orch.fail_step,
        "skip": orch.skip_step,
        "cancel": orch.cancel_step,
    }
    handler = handlers.get(action)
    if handler is None:
        raise HTTPException(404, f"unknown step action: {action}")
    result = handler(db, step_id, notes=(payload.notes if payload else None), actor=actor)
    return result_out("step", step_out(result.entity), result)


# ---- Material allocations ----
@router.get("/batches/{batch_id}/materials")
def list_allocations(batch_id: str, db: Session = Depends(get_db), orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return [allocation_out(a) for a in orch.list_allocations(db, batch_id)]


@router.post("/batches/{batch_id}/materials")
def add_material_allocation(
    batch_id: str,
    payload: MaterialIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.add_material_allocation(db, batch_id, actor=actor, **payload.model_dump())
    return result_out("allocation", allocation_out(result.entity), result)


@router.post("/materials/{allocation_id}/allocate", dependencies=[Depends(kick_dispatcher)])
def allocate_material(
    allocation_id: str,
    payload: AllocateIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.allocate_material(db, allocation_id, payload.quantity, actor=actor)
    return result_out("allocation", allocation_out(result.entity), result)


@router.post("/materials/{allocation_id}/consume", dependencies=[Depends(kick_dispatcher)])
def consume_material(
    allocation_id: str,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.consume_material(db, allocation_id, actor=actor)
    return result_out("allocation", allocation_out(result.entity), result)


@router.post("/materials/{allocation_id}/required")
def adjust_required(
    allocation_id: str,
    payload: RequiredIn,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    result = orch.adjust_required(db, allocation_id, payload.quantity_required, actor=actor)
    return result_out("allocation", allocation_out(result.entity), result)


@router.delete("/materials/{allocation_id}")
def delete_material_allocation(
    allocation_id: str,
    db: Session = Depends(get_db),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
    actor: str = Depends(get_actor),
):
    orch.delete_material_allocation(db, allocation_id, actor=actor)
    return {"ok": True, "deleted": True}
