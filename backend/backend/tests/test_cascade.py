from app.db.models.audit import AuditLog
from services.lifecycle import cascade
from services.lifecycle.status import BatchStatus, RequestStatus, StepStatus
from services.lifecycle.unit_of_work import LifecycleUnitOfWork

S = StepStatus
B = BatchStatus


def test_derive_batch_examples():
    assert cascade.derive_batch_status([S.COMPLETED, S.COMPLETED, S.SKIPPED]) == B.COMPLETED
    assert cascade.derive_batch_status([S.IN_PROGRESS, S.PENDING, S.COMPLETED]) == B.IN_PROGRESS
    assert cascade.derive_batch_status([S.PENDING, S.PENDING]) == B.PENDING
    assert cascade.derive_batch_status([S.FAILED, S.COMPLETED]) == B.ON_HOLD


def test_derive_batch_keeps_status():
    assert cascade.derive_batch_status([]) is None
    assert cascade.derive_batch_status([S.SCHEDULED, S.PENDING]) is None
    assert cascade.derive_batch_status([S.COMPLETED, S.PENDING]) is None


def test_failed_step_wins_over_running_step():
    assert cascade.derive_batch_status([S.FAILED, S.IN_PROGRESS]) == B.ON_HOLD


def test_derive_request():
    assert cascade.derive_request_status([]) is None
    assert cascade.derive_request_status([B.COMPLETED, B.CANCELLED]) == RequestStatus.COMPLETED
    assert cascade.derive_request_status([B.IN_PROGRESS, B.PENDING]) == RequestStatus.IN_PRODUCTION
    assert cascade.derive_request_status([B.PENDING, B.SCHEDULED]) is None
    # cancellation only flows top-down
    assert cascade.derive_request_status([B.CANCELLED]) == RequestStatus.COMPLETED


def test_refresh_batch_is_idempotent(session, planned_batch):
    _, batch = planned_batch
    batch.steps[0].status = StepStatus.IN_PROGRESS
    session.commit()

    with LifecycleUnitOfWork(session) as uow:
        assert cascade.refresh_batch(uow, batch) is True
    assert batch.status == BatchStatus.IN_PROGRESS
    audit_rows = session.query(AuditLog).count()

    with LifecycleUnitOfWork(session) as uow:
        assert cascade.refresh_batch(uow, batch) is False
    assert uow.events == []
    assert session.query(AuditLog).count() == audit_rows


def test_refresh_batch_never_rewrites_terminal(session, planned_batch):
    _, batch = planned_batch
    batch.status = BatchStatus.CANCELLED
    batch.steps[0].status = StepStatus.IN_PROGRESS
    session.commit()

    with LifecycleUnitOfWork(session) as uow:
        assert cascade.refresh_batch(uow, batch) is False
    assert batch.status == BatchStatus.CANCELLED


def test_cascade_batch_moves_request(session, planned_batch):
    request, batch = planned_batch
    batch.steps[0].status = StepStatus.IN_PROGRESS
    session.commit()

    with LifecycleUnitOfWork(session) as uow:
        cascade.cascade_batch(uow, batch)
    assert batch.status == BatchStatus.IN_PROGRESS
    assert request.status == RequestStatus.IN_PRODUCTION
    names = [e.name for e in uow.events]
    assert names == ["BatchStatusChanged", "RequestStatusChanged"]
    assert batch.actual_start is not None


def test_cancel_request_tree(session, planned_batch):
    request, batch = planned_batch
    with LifecycleUnitOfWork(session) as uow:
        affected = cascade.cancel_request_tree(uow, request, reason="customer withdrew")
    assert affected == [batch]
    assert request.status == RequestStatus.CANCELLED
    assert batch.status == BatchStatus.CANCELLED
    assert {s.status for s in batch.steps} == {StepStatus.CANCELLED}
    assert sum(1 for e in uow.events if e.name == "BatchCancelled") == 1
