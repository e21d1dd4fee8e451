"""Cascade Updater.

Parent statuses are re-derived from the full current set of children, never
patched from a delta, so re-running after a duplicated or out-of-order call
converges on the same answer. A write happens only when the derived value
differs from the stored one, and a parent already in a terminal status is
never rewritten.
"""
from __future__ import annotations

from collections import Counter
from typing import Iterable

from app.db.models.common import utcnow
from app.db.models.production import ProductionBatch, ProductionRequest
from services.lifecycle.events import (
    BatchCancelled,
    BatchCompleted,
    BatchStatusChanged,
    RequestStatusChanged,
    StepStatusChanged,
)
from services.lifecycle.status import BatchStatus, RequestStatus, StepStatus, is_terminal
from services.lifecycle.unit_of_work import LifecycleUnitOfWork

_REQUEST_NOTES = {
    RequestStatus.IN_PRODUCTION: "Production started for this request.",
    RequestStatus.COMPLETED: "All production completed for this request.",
    RequestStatus.CANCELLED: "Request cancelled.",
}


def derive_batch_status(step_statuses: Iterable[StepStatus]) -> BatchStatus | None:
    """Batch status implied by its steps, or None to keep the stored status."""
    statuses = list(step_statuses)
    if not statuses:
        return None
    counts = Counter(statuses)
    if counts[StepStatus.COMPLETED] + counts[StepStatus.SKIPPED] == len(statuses):
        return BatchStatus.COMPLETED
    if counts[StepStatus.FAILED] > 0:
        return BatchStatus.ON_HOLD
    if counts[StepStatus.IN_PROGRESS] > 0:
        return BatchStatus.IN_PROGRESS
    if counts[StepStatus.PENDING] == len(statuses):
        return BatchStatus.PENDING
    return None


def derive_request_status(batch_statuses: Iterable[BatchStatus]) -> RequestStatus | None:
    """Request status implied by its batches, or None to keep the stored status.

    Cancellation is not derived here: it only flows top-down via cancel_request.
    """
    statuses = list(batch_statuses)
    if statuses and all(s in (BatchStatus.COMPLETED, BatchStatus.CANCELLED) for s in statuses):
        return RequestStatus.COMPLETED
    if any(s == BatchStatus.IN_PROGRESS for s in statuses):
        return RequestStatus.IN_PRODUCTION
    return None


def refresh_batch(uow: LifecycleUnitOfWork, batch: ProductionBatch) -> bool:
    """Re-derive and store a batch's status. Returns True when a write happened."""
    if is_terminal("batch", batch.status):
        return False
    derived = derive_batch_status(step.status for step in batch.steps)
    if derived is None or derived == batch.status:
        return False

    previous = batch.status
    uow.transition("batch", batch, derived, validate=False, reason="derived from steps")
    now = utcnow()
    if derived == BatchStatus.IN_PROGRESS and batch.actual_start is None:
        batch.actual_start = min((s.actual_start for s in batch.steps if s.actual_start), default=now)
    if derived == BatchStatus.COMPLETED:
        batch.actual_end = now
        if batch.actual_start is None:
            batch.actual_start = now
    uow.emit(BatchStatusChanged(batch.request_id, batch.id, previous.value, derived.value))
    if derived == BatchStatus.COMPLETED:
        uow.emit(BatchCompleted(batch.request_id, batch.id))
    return True


def refresh_request(uow: LifecycleUnitOfWork, request: ProductionRequest) -> bool:
    """Re-derive and store a request's status. Returns True when a write happened."""
    if is_terminal("request", request.status):
        return False
    derived = derive_request_status(batch.status for batch in request.batches)
    if derived is None or derived == request.status:
        return False

    previous = request.status
    uow.transition("request", request, derived, validate=False, reason="derived from batches")
    uow.emit(RequestStatusChanged(request.id, request.request_number, previous.value, derived.value, _REQUEST_NOTES[derived]))
    return True


def cascade_batch(uow: LifecycleUnitOfWork, batch: ProductionBatch) -> None:
    """Refresh a batch and then its request, after any step or batch mutation."""
    refresh_batch(uow, batch)
    uow.db.flush()
    refresh_request(uow, batch.request)


def cancel_batch_tree(uow: LifecycleUnitOfWork, batch: ProductionBatch, *, reason: str) -> bool:
    """Cancel a non-terminal batch and every non-terminal step under it."""
    if is_terminal("batch", batch.status):
        return False
    for step in batch.steps:
        if not is_terminal("step", step.status):
            previous = step.status
            uow.transition("step", step, StepStatus.CANCELLED, reason=reason)
            uow.emit(StepStatusChanged(batch.id, step.id, previous.value, StepStatus.CANCELLED.value))
    previous = batch.status
    uow.transition("batch", batch, BatchStatus.CANCELLED, reason=reason)
    uow.emit(BatchStatusChanged(batch.request_id, batch.id, previous.value, BatchStatus.CANCELLED.value))
    uow.emit(BatchCancelled(batch.request_id, batch.id))
    return True


def cancel_request_tree(uow: LifecycleUnitOfWork, request: ProductionRequest, *, reason: str) -> list[ProductionBatch]:
    """The one top-down cascade: request, then its open batches and their open steps."""
    previous = request.status
    uow.transition("request", request, RequestStatus.CANCELLED, reason=reason)
    affected = [batch for batch in request.batches if cancel_batch_tree(uow, batch, reason=reason)]
    uow.emit(RequestStatusChanged(request.id, request.request_number, previous.value, RequestStatus.CANCELLED.value, reason))
    return affected
