"""Status vocabulary and allowed-transition tables.

Each entity owns a closed enum and a table mapping a status to the set of
statuses it may move to. Statuses with no outgoing edge are terminal.
"""
from __future__ import annotations

import enum
from typing import Mapping

from services.lifecycle.errors import InvalidTransition


class RequestPriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class RequestStatus(str, enum.Enum):
    RECEIVED = "received"
    PLANNED = "planned"
    IN_PRODUCTION = "in_production"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BatchStatus(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"


class StepStatus(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    FAILED = "failed"


class AllocationStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    ALLOCATED = "allocated"
    CONSUMED = "consumed"


class QualityResult(str, enum.Enum):
    PENDING = "pending"
    PASS = "pass"
    FAIL = "fail"
    CONDITIONAL_PASS = "conditional_pass"
    NEEDS_REWORK = "needs_rework"


class CheckType(str, enum.Enum):
    VISUAL = "visual"
    DIMENSIONAL = "dimensional"
    FUNCTIONAL = "functional"
    MATERIAL = "material"
    SAFETY = "safety"
    OTHER = "other"


TransitionTable = Mapping[enum.Enum, frozenset]

STEP_TRANSITIONS: TransitionTable = {
    StepStatus.PENDING: frozenset({StepStatus.SCHEDULED, StepStatus.IN_PROGRESS, StepStatus.CANCELLED, StepStatus.SKIPPED}),
    StepStatus.SCHEDULED: frozenset({StepStatus.IN_PROGRESS, StepStatus.CANCELLED, StepStatus.SKIPPED}),
    StepStatus.IN_PROGRESS: frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.CANCELLED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.CANCELLED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}

BATCH_TRANSITIONS: TransitionTable = {
    BatchStatus.PENDING: frozenset({BatchStatus.SCHEDULED, BatchStatus.IN_PROGRESS, BatchStatus.CANCELLED}),
    BatchStatus.SCHEDULED: frozenset({BatchStatus.IN_PROGRESS, BatchStatus.CANCELLED}),
    BatchStatus.IN_PROGRESS: frozenset({BatchStatus.COMPLETED, BatchStatus.ON_HOLD, BatchStatus.CANCELLED}),
    BatchStatus.ON_HOLD: frozenset({BatchStatus.IN_PROGRESS, BatchStatus.CANCELLED}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.CANCELLED: frozenset(),
}

REQUEST_TRANSITIONS: TransitionTable = {
    RequestStatus.RECEIVED: frozenset({RequestStatus.PLANNED, RequestStatus.CANCELLED}),
    RequestStatus.PLANNED: frozenset({RequestStatus.IN_PRODUCTION, RequestStatus.CANCELLED}),
    RequestStatus.IN_PRODUCTION: frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

# Leaving "pending" by deletion is handled as a guard, not as a status.
ALLOCATION_TRANSITIONS: TransitionTable = {
    AllocationStatus.PENDING: frozenset({AllocationStatus.PARTIAL, AllocationStatus.ALLOCATED}),
    AllocationStatus.PARTIAL: frozenset({AllocationStatus.PARTIAL, AllocationStatus.ALLOCATED}),
    AllocationStatus.ALLOCATED: frozenset({AllocationStatus.CONSUMED}),
    AllocationStatus.CONSUMED: frozenset(),
}

TABLES: dict[str, TransitionTable] = {
    "step": STEP_TRANSITIONS,
    "batch": BATCH_TRANSITIONS,
    "request": REQUEST_TRANSITIONS,
    "material_allocation": ALLOCATION_TRANSITIONS,
}

FAILING_RESULTS = frozenset({QualityResult.FAIL, QualityResult.NEEDS_REWORK})
PASSING_RESULTS = frozenset({QualityResult.PASS, QualityResult.CONDITIONAL_PASS})


def allowed(entity: str, current, target) -> bool:
    table = TABLES[entity]
    return target in table.get(current, frozenset())


def is_terminal(entity: str, status) -> bool:
    return not TABLES[entity].get(status)


def ensure_transition(entity: str, current, target) -> None:
    if not allowed(entity, current, target):
        raise InvalidTransition(entity, _value(current), _value(target))


def _value(status) -> str:
    return status.value if isinstance(status, enum.Enum) else str(status)
