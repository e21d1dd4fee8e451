"""Lifecycle Orchestrator.

Single entry point for every mutating production use case. Each call loads
its target, validates the transition, applies it, runs the cascade and
collects domain events, all inside one LifecycleUnitOfWork. The events reach
peer services later through the outbox; delivery is never part of the
transaction.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.core.config import Settings
from app.core.request_context import get_request_id
from app.db.models.common import utcnow, uuid4_str
from app.db.models.feedback import ProductionFeedback, QualityCheck
from app.db.models.production import (
    MaterialAllocation,
    ProductionBatch,
    ProductionRequest,
    ProductionStep,
)
from services.lifecycle import cascade, materials, quality
from services.lifecycle.errors import (
    DuplicateMaterialAllocation,
    DuplicateStepOrder,
    InvalidQuantity,
    InvalidStepOrder,
    InvalidTransition,
    NotFound,
    OperationNotPermitted,
)
from services.lifecycle.events import (
    BatchCompleted,
    BatchCreated,
    BatchStatusChanged,
    DomainEvent,
    RequestStatusChanged,
    StepCompleted,
    StepStatusChanged,
    material_reservation_entry,
    step_queue_entry,
)
from services.lifecycle.status import (
    AllocationStatus,
    BatchStatus,
    CheckType,
    QualityResult,
    RequestPriority,
    RequestStatus,
    StepStatus,
    ensure_transition,
    is_terminal,
)
from services.lifecycle.unit_of_work import LifecycleUnitOfWork


@dataclass
class LifecycleResult:
    """The mutated entity, any other entity whose status changed, and the events raised."""

    entity: Any
    changed: list[Any] = field(default_factory=list)
    events: list[DomainEvent] = field(default_factory=list)


@dataclass
class ReconcileReport:
    batches_checked: int = 0
    batches_updated: int = 0
    requests_checked: int = 0
    requests_updated: int = 0


def _number(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10].upper()}"


def _duration_minutes(start: datetime | None, end: datetime | None) -> int | None:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() // 60)


class LifecycleOrchestrator:
    def __init__(self, settings: Settings):
        self.settings = settings

    # ---- plumbing ----
    def _unit(self, db: Session, actor: str) -> LifecycleUnitOfWork:
        return LifecycleUnitOfWork(db, actor=actor, request_id=get_request_id())

    @staticmethod
    def _result(uow: LifecycleUnitOfWork, entity) -> LifecycleResult:
        changed = [obj for obj in uow.changed.values() if obj is not entity]
        return LifecycleResult(entity=entity, changed=changed, events=list(uow.events))

    def _lock_batch(self, db: Session, batch_id: str) -> ProductionBatch:
        # Row lock on the batch serialises concurrent mutations of one aggregate
        batch = (
            db.query(ProductionBatch)
            .options(
                selectinload(ProductionBatch.steps),
                selectinload(ProductionBatch.allocations),
                selectinload(ProductionBatch.request).selectinload(ProductionRequest.batches),
            )
            .filter(ProductionBatch.id == batch_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if not batch:
            raise NotFound("batch", batch_id)
        return batch

    def _lock_request(self, db: Session, request_id: str) -> ProductionRequest:
        request = (
            db.query(ProductionRequest)
            .options(selectinload(ProductionRequest.batches).selectinload(ProductionBatch.steps))
            .filter((ProductionRequest.id == request_id) | (ProductionRequest.request_number == request_id))
            .populate_existing()
            .with_for_update()
            .first()
        )
        if not request:
            raise NotFound("request", request_id)
        return request

    def _step_in_locked_batch(self, db: Session, step_id: str) -> tuple[ProductionBatch, ProductionStep]:
        batch_id = db.query(ProductionStep.batch_id).filter(ProductionStep.id == step_id).scalar()
        if batch_id is None:
            raise NotFound("step", step_id)
        batch = self._lock_batch(db, batch_id)
        step = next(s for s in batch.steps if s.id == step_id)
        return batch, step

    def _allocation_in_locked_batch(self, db: Session, allocation_id: str) -> tuple[ProductionBatch, MaterialAllocation]:
        batch_id = db.query(MaterialAllocation.batch_id).filter(MaterialAllocation.id == allocation_id).scalar()
        if batch_id is None:
            raise NotFound("material_allocation", allocation_id)
        batch = self._lock_batch(db, batch_id)
        allocation = next(a for a in batch.allocations if a.id == allocation_id)
        return batch, allocation

    def _lock_feedback(self, db: Session, feedback_id: str) -> ProductionFeedback:
        # Serialises check edits so the score and issue events see every sibling check
        feedback = (
            db.query(ProductionFeedback)
            .options(selectinload(ProductionFeedback.checks))
            .filter((ProductionFeedback.id == feedback_id) | (ProductionFeedback.feedback_number == feedback_id))
            .populate_existing()
            .with_for_update()
            .first()
        )
        if not feedback:
            raise NotFound("feedback", feedback_id)
        return feedback

    def _check_in_locked_feedback(self, db: Session, check_id: str) -> tuple[ProductionFeedback, QualityCheck]:
        feedback_id = db.query(QualityCheck.feedback_id).filter(QualityCheck.id == check_id).scalar()
        if feedback_id is None:
            raise NotFound("quality_check", check_id)
        feedback = self._lock_feedback(db, feedback_id)
        check = next(c for c in feedback.checks if c.id == check_id)
        return feedback, check

    # ---- reads ----
    def get_request(self, db: Session, request_id: str) -> ProductionRequest:
        request = (
            db.query(ProductionRequest)
            .options(selectinload(ProductionRequest.batches))
            .filter((ProductionRequest.id == request_id) | (ProductionRequest.request_number == request_id))
            .first()
        )
        if not request:
            raise NotFound("request", request_id)
        return request

    def list_requests(self, db: Session, *, status: RequestStatus | None = None, limit: int = 200) -> list[ProductionRequest]:
        q = db.query(ProductionRequest)
        if status is not None:
            q = q.filter(ProductionRequest.status == status)
        return q.order_by(ProductionRequest.created_at.desc()).limit(limit).all()

    def get_batch(self, db: Session, batch_id: str) -> ProductionBatch:
        batch = (
            db.query(ProductionBatch)
            .options(
                selectinload(ProductionBatch.steps),
                selectinload(ProductionBatch.allocations),
                selectinload(ProductionBatch.request),
            )
            .filter((ProductionBatch.id == batch_id) | (ProductionBatch.batch_number == batch_id))
            .first()
        )
        if not batch:
            raise NotFound("batch", batch_id)
        return batch

    def list_batches(
        self,
        db: Session,
        *,
        request_id: str | None = None,
        status: BatchStatus | None = None,
        limit: int = 200,
    ) -> list[ProductionBatch]:
        q = db.query(ProductionBatch)
        if request_id:
            q = q.filter(ProductionBatch.request_id == self.get_request(db, request_id).id)
        if status is not None:
            q = q.filter(ProductionBatch.status == status)
        return q.order_by(ProductionBatch.created_at.desc()).limit(limit).all()

    def get_step(self, db: Session, step_id: str) -> ProductionStep:
        step = db.query(ProductionStep).filter(ProductionStep.id == step_id).first()
        if not step:
            raise NotFound("step", step_id)
        return step

    def list_allocations(self, db: Session, batch_id: str) -> list[MaterialAllocation]:
        return list(self.get_batch(db, batch_id).allocations)

    def get_feedback(self, db: Session, feedback_id: str) -> ProductionFeedback:
        feedback = (
            db.query(ProductionFeedback)
            .options(selectinload(ProductionFeedback.checks))
            .filter((ProductionFeedback.id == feedback_id) | (ProductionFeedback.feedback_number == feedback_id))
            .first()
        )
        if not feedback:
            raise NotFound("feedback", feedback_id)
        return feedback

    def quality_summary(self, db: Session, feedback_id: str) -> quality.QualitySummary:
        return quality.summarize(
            self.get_feedback(db, feedback_id),
            pass_threshold=self.settings.quality_pass_threshold,
            conditional_threshold=self.settings.quality_conditional_threshold,
        )

    # ---- requests ----
    def create_request(
        self,
        db: Session,
        *,
        product_name: str,
        quantity: int,
        priority: RequestPriority = RequestPriority.NORMAL,
        due_date: date | None = None,
        customer_id: str | None = None,
        specifications: dict | None = None,
        request_number: str | None = None,
        actor: str = "system",
    ) -> LifecycleResult:
        if quantity < 1:
            raise InvalidQuantity(f"request quantity must be at least 1, got {quantity}")
        number = request_number or _number("PR")

        with self._unit(db, actor) as uow:
            request = ProductionRequest(
                id=uuid4_str(),
                request_number=number,
                customer_id=customer_id,
                product_name=product_name,
                quantity=quantity,
                priority=priority,
                due_date=due_date,
                specifications=specifications or {},
                status=RequestStatus.RECEIVED,
            )
            db.add(request)
            try:
                # Duplicate numbers surface here from the unique index, also under concurrent creates
                db.flush()
            except IntegrityError as exc:
                raise OperationNotPermitted(f"request number already exists: {number}") from exc
            uow.record("request.created", "request", request, {"request_number": number})
        return self._result(uow, request)

    def cancel_request(self, db: Session, request_id: str, *, reason: str | None = None, actor: str = "system") -> LifecycleResult:
        with self._unit(db, actor) as uow:
            request = self._lock_request(db, request_id)
            ensure_transition("request", request.status, RequestStatus.CANCELLED)
            cascade.cancel_request_tree(uow, request, reason=reason or "Request cancelled by user")
        return self._result(uow, request)

    def complete_request(self, db: Session, request_id: str, *, actor: str = "system") -> LifecycleResult:
        with self._unit(db, actor) as uow:
            request = self._lock_request(db, request_id)
            previous = request.status
            uow.transition("request", request, RequestStatus.COMPLETED, reason="explicit completion")
            uow.emit(RequestStatusChanged(
                request.id, request.request_number, previous.value, RequestStatus.COMPLETED.value,
                "Request marked completed.",
            ))
        return self._result(uow, request)

    def delete_request(self, db: Session, request_id: str, *, actor: str = "system") -> None:
        with self._unit(db, actor) as uow:
            request = self._lock_request(db, request_id)
            if request.batches:
                raise OperationNotPermitted("cannot delete a request with batches; cancel it instead")
            uow.record("request.deleted", "request", request, {"request_number": request.request_number})
            db.delete(request)

    # ---- batches ----
    def create_batch(
        self,
        db: Session,
        request_id: str,
        *,
        quantity: int,
        scheduled_start: datetime | None = None,
        scheduled_end: datetime | None = None,
        notes: str | None = None,
        steps: Iterable[dict] | None = None,
        materials: Iterable[dict] | None = None,
        batch_number: str | None = None,
        actor: str = "system",
    ) -> LifecycleResult:
        if quantity < 1:
            raise InvalidQuantity(f"batch quantity must be at least 1, got {quantity}")
        step_specs = self._ordered_step_specs(list(steps or []))
        material_specs = list(materials or [])

        with self._unit(db, actor) as uow:
            request = self._lock_request(db, request_id)
            if is_terminal("request", request.status):
                raise InvalidTransition("request", request.status.value, RequestStatus.PLANNED.value)

            batch = ProductionBatch(
                id=uuid4_str(),
                batch_number=batch_number or _number("B"),
                request=request,
                request_id=request.id,
                quantity=quantity,
                scheduled_start=scheduled_start,
                scheduled_end=scheduled_end,
                notes=notes,
                status=BatchStatus.PENDING,
            )
            db.add(batch)
            uow.record("batch.created", "batch", batch, {"request_id": request.id})

            for order, spec in enumerate(step_specs, start=1):
                batch.steps.append(self._new_step(batch, order, spec))

            seen: set[str] = set()
            for spec in material_specs:
                material_id = str(spec["material_id"])
                if material_id in seen:
                    raise DuplicateMaterialAllocation(batch.id, material_id)
                seen.add(material_id)
                batch.allocations.append(self._new_allocation(batch, material_id, spec))

            if request.status == RequestStatus.RECEIVED:
                uow.transition("request", request, RequestStatus.PLANNED, reason="batch planned")
                uow.emit(RequestStatusChanged(request.id, request.request_number, "received", "planned"))

            db.flush()
            uow.emit(BatchCreated(
                batch_id=batch.id,
                batch_number=batch.batch_number,
                request_id=request.request_number,
                product_name=request.product_name,
                priority=request.priority.value,
                steps=[step_queue_entry(s) for s in batch.steps],
                materials=[material_reservation_entry(a) for a in batch.allocations],
            ))
        return self._result(uow, batch)

    def update_batch_status(
        self,
        db: Session,
        batch_id: str,
        status: BatchStatus,
        *,
        notes: str | None = None,
        actor: str = "system",
    ) -> LifecycleResult:
        with self._unit(db, actor) as uow:
            batch = self._lock_batch(db, batch_id)
            if notes is not None:
                batch.notes = notes
            ensure_transition("batch", batch.status, status)
            if status == BatchStatus.CANCELLED:
                cascade.cancel_batch_tree(uow, batch, reason=notes or "Batch cancelled")
            else:
                if (
                    status == BatchStatus.COMPLETED
                    and batch.steps
                    and cascade.derive_batch_status(s.status for s in batch.steps) != BatchStatus.COMPLETED
                ):
                    raise OperationNotPermitted(f"batch {batch.id} still has open steps; finish or skip them first")
                previous = batch.status
                uow.transition("batch", batch, status)
                now = utcnow()
                if status == BatchStatus.IN_PROGRESS and batch.actual_start is None:
                    batch.actual_start = now
                if status == BatchStatus.COMPLETED:
                    batch.actual_end = now
                uow.emit(BatchStatusChanged(batch.request_id, batch.id, previous.value, status.value))
                if status == BatchStatus.COMPLETED:
                    uow.emit(BatchCompleted(batch.request_id, batch.id))
            db.flush()
            cascade.refresh_request(uow, batch.request)
        return self._result(uow, batch)

    def delete_batch(self, db: Session, batch_id: str, *, actor: str = "system") -> None:
        with self._unit(db, actor) as uow:
            batch = self._lock_batch(db, batch_id)
            if any(s.status != StepStatus.PENDING for s in batch.steps):
                raise OperationNotPermitted("cannot delete a batch once any step has left pending; cancel it instead")
            if batch.status in (BatchStatus.IN_PROGRESS, BatchStatus.COMPLETED):
                raise OperationNotPermitted(f"cannot delete a batch that is {batch.status.value}; cancel it instead")
            if any(a.status in (AllocationStatus.ALLOCATED, AllocationStatus.CONSUMED) for a in batch.allocations):
                raise OperationNotPermitted("cannot delete a batch with allocated materials")
            if db.query(ProductionFeedback.id).filter(ProductionFeedback.batch_id == batch.id).first():
                raise OperationNotPermitted("cannot delete a batch that has production feedback")
            step_ids = [s.id for s in batch.steps]
            if step_ids and db.query(QualityCheck.id).filter(QualityCheck.step_id.in_(step_ids)).first():
                raise OperationNotPermitted("cannot delete a batch whose steps have quality checks")
            request = batch.request
            uow.record("batch.deleted", "batch", batch, {"batch_number": batch.batch_number})
            db.delete(batch)
            db.flush()
            db.expire(request, ["batches"])
            cascade.refresh_request(uow, request)

    # ---- steps ----
    @staticmethod
    def _ordered_step_specs(specs: list[dict]) -> list[dict]:
        orders = [s.get("step_order") for s in specs]
        if not any(o is not None for o in orders):
            return specs
        if any(o is None for o in orders):
            raise InvalidStepOrder("either every step or no step must carry step_order")
        seen: set[int] = set()
        for o in orders:
            if o in seen:
                raise DuplicateStepOrder("new", o)
            seen.add(o)
        if sorted(orders) != list(range(1, len(orders) + 1)):
            raise InvalidStepOrder(f"step orders must be contiguous from 1, got {sorted(orders)}")
        return sorted(specs, key=lambda s: s["step_order"])

    @staticmethod
    def _new_step(batch: ProductionBatch, order: int, spec: dict) -> ProductionStep:
        return ProductionStep(
            id=uuid4_str(),
            batch_id=batch.id,
            step_order=order,
            step_name=spec["step_name"],
            machine_type=spec.get("machine_type"),
            scheduled_start=spec.get("scheduled_start"),
            scheduled_end=spec.get("scheduled_end"),
            machine_id=spec.get("machine_id"),
            operator_id=spec.get("operator_id"),
            notes=spec.get("notes"),
            status=StepStatus.PENDING,
        )

    def add_step(
        self,
        db: Session,
        batch_id: str,
        *,
        step_name: str,
        step_order: int | None = None,
        machine_type: str | None = None,
        scheduled_start: datetime | None = None,
        scheduled_end: datetime | None = None,
        machine_id: str | None = None,
        notes: str | None = None,
        actor: str = "system",
    ) -> LifecycleResult:
        with self._unit(db, actor) as uow:
            batch = self._lock_batch(db, batch_id)
            if is_terminal("batch", batch.status):
                raise OperationNotPermitted(f"batch {batch.id} is {batch.status.value}; steps can no longer be added")
            next_order = len(batch.steps) + 1
            if step_order is not None:
                if any(s.step_order == step_order for s in batch.steps):
                    raise DuplicateStepOrder(batch.id, step_order)
                if step_order != next_order:
                    raise InvalidStepOrder(f"step_order must be {next_order} to keep orders contiguous")
            step = self._new_step(batch, next_order, {
                "step_name": step_name,
                "machine_type": machine_type,
                "scheduled_start": scheduled_start,
                "scheduled_end": scheduled_end,
                "machine_id": machine_id,
                "notes": notes,
            })
            batch.steps.append(step)
            uow.record("step.created", "step", step, {"batch_id": batch.id, "step_order": next_order})
            db.flush()
            cascade.cascade_batch(uow, batch)
        return self._result(uow, step)

    def update_step(self, db: Session, step_id: str, *, actor: str = "system", **fields) -> LifecycleResult:
        editable = {"step_name", "machine_type", "machine_id", "operator_id", "scheduled_start", "scheduled_end", "notes"}
        unknown = set(fields) - editable
        if unknown:
            raise OperationNotPermitted(f"fields cannot be edited directly: {sorted(unknown)}")
        with self._unit(db, actor) as uow:
            _, step = self._step_in_locked_batch(db, step_id)
            if is_terminal("step", step.status) and set(fields) - {"notes"}:
                raise OperationNotPermitted(f"step {step.id} is {step.status.value}; only notes can change")
            for key, value in fields.items():
                setattr(step, key, value)
            uow.record("step.updated", "step", step, {"fields": sorted(fields)})
        return self._result(uow, step)

    def delete_step(self, db: Session, step_id: str, *, actor: str = "system") -> LifecycleResult:
        with self._unit(db, actor) as uow:
            batch, step = self._step_in_locked_batch(db, step_id)
            if step.status != StepStatus.PENDING:
                raise OperationNotPermitted(f"step {step.id} is {step.status.value}; only pending steps can be deleted")
            if db.query(QualityCheck.id).filter(QualityCheck.step_id == step.id).first():
                raise OperationNotPermitted(f"step {step.id} has quality checks recorded against it")
            uow.record("step.deleted", "step", step, {"batch_id": batch.id, "step_order": step.step_order})
            batch.steps.remove(step)
            db.flush()
            # Renumber in two passes so the unique (batch_id, step_order) index never sees a collision
            remaining = sorted(batch.steps, key=lambda s: s.step_order)
            for offset, s in enumerate(remaining, start=1):
                s.step_order = -offset
            db.flush()
            for s in remaining:
                s.step_order = -s.step_order
            db.flush()
            cascade.cascade_batch(uow, batch)
        return self._result(uow, batch)

    def _move_step(
        self,
        db: Session,
        step_id: str,
        target: StepStatus,
        *,
        actor: str,
        notes: str | None = None,
        operator_id: str | None = None,
        machine_id: str | None = None,
    ) -> LifecycleResult:
        with self._unit(db, actor) as uow:
            batch, step = self._step_in_locked_batch(db, step_id)
            if is_terminal("batch", batch.status):
                raise OperationNotPermitted(f"batch {batch.id} is {batch.status.value}; its steps can no longer move")
            previous = step.status
            uow.transition("step", step, target)
            now = utcnow()
            if target == StepStatus.IN_PROGRESS:
                step.actual_start = now
                if operator_id is not None:
                    step.operator_id = operator_id
                if machine_id is not None:
                    step.machine_id = machine_id
            if target in (StepStatus.COMPLETED, StepStatus.FAILED):
                step.actual_end = now
                step.duration_minutes = _duration_minutes(step.actual_start, now)
            if notes:
                step.notes = notes
            uow.emit(StepStatusChanged(batch.id, step.id, previous.value, target.value))
            if target == StepStatus.COMPLETED:
                uow.emit(StepCompleted(batch.id, step.id))
            db.flush()
            cascade.cascade_batch(uow, batch)
        return self._result(uow, step)

    def schedule_step(self, db: Session, step_id: str, *, actor: str = "system") -> LifecycleResult:
        return self._move_step(db, step_id, StepStatus.SCHEDULED, actor=actor)

    def start_step(
        self,
        db: Session,
        step_id: str,
        *,
        operator_id: str | None = None,
        machine_id: str | None = None,
        actor: str = "system",
    ) -> LifecycleResult:
        return self._move_step(db, step_id, StepStatus.IN_PROGRESS, actor=actor, operator_id=operator_id, machine_id=machine_id)

    def complete_step(self, db: Session, step_id: str, *, notes: str | None = None, actor: str = "system") -> LifecycleResult:
        return self._move_step(db, step_id, StepStatus.COMPLETED, actor=actor, notes=notes)

    def fail_step(self, db: Session, step_id: str, *, notes: str | None = None, actor: str = "system") -> LifecycleResult:
        return self._move_step(db, step_id, StepStatus.FAILED, actor=actor, notes=notes)

    def skip_step(self, db: Session, step_id: str, *, notes: str | None = None, actor: str = "system") -> LifecycleResult:
        return self._move_step(db, step_id, StepStatus.SKIPPED, actor=actor, notes=notes)

    def cancel_step(self, db: Session, step_id: str, *, notes: str | None = None, actor: str = "system") -> LifecycleResult:
        return self._move_step(db, step_id, StepStatus.CANCELLED, actor=actor, notes=notes)

    # ---- material allocations ----
    @staticmethod
    def _new_allocation(batch: ProductionBatch, material_id: str, spec: dict) -> MaterialAllocation:
        required = float(spec["quantity_required"])
        if required <= 0:
            raise InvalidQuantity(f"required quantity must be positive, got {required}")
        return MaterialAllocation(
            id=uuid4_str(),
            batch_id=batch.id,
            material_id=material_id,
            quantity_required=required,
            quantity_allocated=0.0,
            unit_of_measure=spec.get("unit_of_measure") or "pcs",
            notes=spec.get("notes"),
            status=AllocationStatus.PENDING,
        )

    def add_material_allocation(
        self,
        db: Session,
        batch_id: str,
        *,
        material_id: str,
        quantity_required: float,
        unit_of_measure: str,
        notes: str | None = None,
        actor: str = "system",
    ) -> LifecycleResult:
        with self._unit(db, actor) as uow:
            batch = self._lock_batch(db, batch_id)
            if is_terminal("batch", batch.status):
                raise OperationNotPermitted(f"batch {batch.id} is {batch.status.value}; materials can no longer be added")
            if any(a.material_id == str(material_id) for a in batch.allocations):
                raise DuplicateMaterialAllocation(batch.id, str(material_id))
            allocation = self._new_allocation(batch, str(material_id), {
                "quantity_required": quantity_required,
                "unit_of_measure": unit_of_measure,
                "notes": notes,
            })
            batch.allocations.append(allocation)
            uow.record("material_allocation.created", "material_allocation", allocation, {"material_id": allocation.material_id})
        return self._result(uow, allocation)

    def allocate_material(self, db: Session, allocation_id: str, quantity: float, *, actor: str = "system") -> LifecycleResult:
        with self._unit(db, actor) as uow:
            _, allocation = self._allocation_in_locked_batch(db, allocation_id)
            materials.allocate(uow, allocation, quantity)
        return self._result(uow, allocation)

    def consume_material(self, db: Session, allocation_id: str, *, actor: str = "system") -> LifecycleResult:
        with self._unit(db, actor) as uow:
            _, allocation = self._allocation_in_locked_batch(db, allocation_id)
            materials.consume(uow, allocation)
        return self._result(uow, allocation)

    def adjust_required(self, db: Session, allocation_id: str, quantity_required: float, *, actor: str = "system") -> LifecycleResult:
        with self._unit(db, actor) as uow:
            _, allocation = self._allocation_in_locked_batch(db, allocation_id)
            materials.adjust_required(uow, allocation, quantity_required)
        return self._result(uow, allocation)

    def delete_material_allocation(self, db: Session, allocation_id: str, *, actor: str = "system") -> None:
        with self._unit(db, actor) as uow:
            batch, allocation = self._allocation_in_locked_batch(db, allocation_id)
            materials.ensure_deletable(allocation)
            uow.record("material_allocation.deleted", "material_allocation", allocation, {"material_id": allocation.material_id})
            batch.allocations.remove(allocation)

    # ---- feedback & quality ----
    def create_feedback(
        self,
        db: Session,
        *,
        product_name: str | None = None,
        batch_id: str | None = None,
        notes: str | None = None,
        actor: str = "system",
    ) -> LifecycleResult:
        batch = self.get_batch(db, batch_id) if batch_id else None
        name = product_name or (batch.request.product_name if batch else None)
        if not name:
            raise OperationNotPermitted("product_name is required when no batch is given")
        with self._unit(db, actor) as uow:
            feedback = ProductionFeedback(
                id=uuid4_str(),
                feedback_number=_number("FB"),
                batch_id=batch.id if batch else None,
                product_name=name,
                quality_score=None,
                notes=notes,
            )
            db.add(feedback)
            uow.record("feedback.created", "feedback", feedback, {"batch_id": feedback.batch_id})
        return self._result(uow, feedback)

    def _new_check(self, db: Session, feedback: ProductionFeedback, spec: dict, actor: str) -> QualityCheck:
        step_id = spec.get("step_id")
        if step_id:
            self.get_step(db, step_id)
        check = QualityCheck(
            id=uuid4_str(),
            check_number=_number("QC"),
            feedback_id=feedback.id,
            step_id=step_id,
            check_name=spec["check_name"],
            check_type=spec.get("check_type") or CheckType.OTHER,
            result=spec.get("result") or QualityResult.PENDING,
            inspector=spec.get("inspector") or actor,
            notes=spec.get("notes"),
        )
        feedback.checks.append(check)
        return check

    def record_quality_check(self, db: Session, feedback_id: str, *, actor: str = "system", **spec) -> LifecycleResult:
        result = self.record_quality_checks(db, feedback_id, [spec], actor=actor)
        return LifecycleResult(entity=result.entity[0], changed=result.changed, events=result.events)

    def record_quality_checks(self, db: Session, feedback_id: str, checks: list[dict], *, actor: str = "system") -> LifecycleResult:
        if not checks:
            raise OperationNotPermitted("no quality checks given")
        with self._unit(db, actor) as uow:
            feedback = self._lock_feedback(db, feedback_id)
            created = []
            for spec in checks:
                check = self._new_check(db, feedback, spec, actor)
                uow.record("quality_check.created", "quality_check", check, {"result": check.result.value})
                event = quality.quality_issue_for(check, None)
                if event:
                    uow.emit(event)
                created.append(check)
            quality.recompute_quality_score(db, feedback)
            uow.changed[f"feedback:{feedback.id}"] = feedback
        return LifecycleResult(entity=created, changed=[feedback], events=list(uow.events))

    def update_quality_check(
        self,
        db: Session,
        check_id: str,
        *,
        result: QualityResult | None = None,
        notes: str | None = None,
        check_name: str | None = None,
        actor: str = "system",
    ) -> LifecycleResult:
        with self._unit(db, actor) as uow:
            feedback, check = self._check_in_locked_feedback(db, check_id)
            previous = check.result
            if result is not None:
                check.result = result
            if notes is not None:
                check.notes = notes
            if check_name is not None:
                check.check_name = check_name
            uow.record(
                "quality_check.updated",
                "quality_check",
                check,
                {"from": previous.value, "to": check.result.value},
            )
            event = quality.quality_issue_for(check, previous)
            if event:
                uow.emit(event)
            quality.recompute_quality_score(db, feedback)
            uow.changed[f"feedback:{feedback.id}"] = feedback
        return self._result(uow, check)

    def delete_quality_check(self, db: Session, check_id: str, *, actor: str = "system") -> LifecycleResult:
        with self._unit(db, actor) as uow:
            feedback, check = self._check_in_locked_feedback(db, check_id)
            uow.record("quality_check.deleted", "quality_check", check, {"result": check.result.value})
            feedback.checks.remove(check)
            quality.recompute_quality_score(db, feedback)
            uow.changed[f"feedback:{feedback.id}"] = feedback
        return self._result(uow, feedback)

    # ---- reconciliation ----
    def reconcile(self, db: Session, *, actor: str = "reconciler") -> ReconcileReport:
        """Re-derive every open batch and request from its children."""
        report = ReconcileReport()
        open_batches = [s for s in BatchStatus if not is_terminal("batch", s)]
        open_requests = [s for s in RequestStatus if not is_terminal("request", s)]
        with self._unit(db, actor) as uow:
            batches = (
                db.query(ProductionBatch)
                .options(selectinload(ProductionBatch.steps))
                .filter(ProductionBatch.status.in_(open_batches))
                .all()
            )
            for batch in batches:
                report.batches_checked += 1
                if cascade.refresh_batch(uow, batch):
                    report.batches_updated += 1
            db.flush()
            requests = (
                db.query(ProductionRequest)
                .options(selectinload(ProductionRequest.batches))
                .filter(ProductionRequest.status.in_(open_requests))
                .all()
            )
            for request in requests:
                report.requests_checked += 1
                if cascade.refresh_request(uow, request):
                    report.requests_updated += 1
        return report
