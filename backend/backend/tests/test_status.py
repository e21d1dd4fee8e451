import pytest

from services.lifecycle.errors import InvalidTransition
from services.lifecycle.status import (
    TABLES,
    AllocationStatus,
    BatchStatus,
    RequestStatus,
    StepStatus,
    allowed,
    ensure_transition,
    is_terminal,
)


def test_step_table_edges():
    assert allowed("step", StepStatus.PENDING, StepStatus.SCHEDULED)
    assert allowed("step", StepStatus.PENDING, StepStatus.IN_PROGRESS)
    assert allowed("step", StepStatus.SCHEDULED, StepStatus.IN_PROGRESS)
    assert allowed("step", StepStatus.IN_PROGRESS, StepStatus.COMPLETED)
    assert allowed("step", StepStatus.IN_PROGRESS, StepStatus.FAILED)
    assert not allowed("step", StepStatus.PENDING, StepStatus.COMPLETED)
    assert not allowed("step", StepStatus.SCHEDULED, StepStatus.PENDING)


def test_skipped_only_reachable_before_start():
    assert allowed("step", StepStatus.PENDING, StepStatus.SKIPPED)
    assert allowed("step", StepStatus.SCHEDULED, StepStatus.SKIPPED)
    assert not allowed("step", StepStatus.IN_PROGRESS, StepStatus.SKIPPED)


def test_batch_and_request_tables():
    assert allowed("batch", BatchStatus.IN_PROGRESS, BatchStatus.ON_HOLD)
    assert allowed("batch", BatchStatus.ON_HOLD, BatchStatus.IN_PROGRESS)
    assert not allowed("batch", BatchStatus.PENDING, BatchStatus.COMPLETED)
    assert allowed("request", RequestStatus.RECEIVED, RequestStatus.PLANNED)
    assert not allowed("request", RequestStatus.RECEIVED, RequestStatus.IN_PRODUCTION)


def test_allocation_table():
    assert allowed("material_allocation", AllocationStatus.PARTIAL, AllocationStatus.PARTIAL)
    assert allowed("material_allocation", AllocationStatus.ALLOCATED, AllocationStatus.CONSUMED)
    assert not allowed("material_allocation", AllocationStatus.PARTIAL, AllocationStatus.CONSUMED)
    assert not allowed("material_allocation", AllocationStatus.ALLOCATED, AllocationStatus.PARTIAL)


@pytest.mark.parametrize(
    "entity,status",
    [
        ("step", StepStatus.COMPLETED),
        ("step", StepStatus.FAILED),
        ("step", StepStatus.CANCELLED),
        ("step", StepStatus.SKIPPED),
        ("batch", BatchStatus.COMPLETED),
        ("batch", BatchStatus.CANCELLED),
        ("request", RequestStatus.COMPLETED),
        ("request", RequestStatus.CANCELLED),
        ("material_allocation", AllocationStatus.CONSUMED),
    ],
)
def test_terminal_statuses_accept_nothing(entity, status):
    assert is_terminal(entity, status)
    enum_type = type(status)
    assert not any(allowed(entity, status, target) for target in enum_type)


def test_every_status_has_a_row():
    for entity, table in TABLES.items():
        enum_type = type(next(iter(table)))
        assert set(table) == set(enum_type), entity


def test_ensure_transition_raises_with_details():
    with pytest.raises(InvalidTransition) as exc_info:
        ensure_transition("batch", BatchStatus.COMPLETED, BatchStatus.IN_PROGRESS)
    err = exc_info.value
    assert err.entity == "batch"
    assert err.current == "completed"
    assert err.target == "in_progress"
    assert err.status_code == 409


def test_ensure_transition_passes_allowed_edge():
    ensure_transition("request", RequestStatus.PLANNED, RequestStatus.IN_PRODUCTION)
