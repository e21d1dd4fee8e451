"""Material Allocation Tracker.

Each operation touches exactly one allocation. Reservation across the
allocations of a batch belongs to the material inventory service.
"""
from __future__ import annotations

from app.db.models.common import utcnow
from app.db.models.production import MaterialAllocation
from services.lifecycle.errors import InvalidQuantity, OperationNotPermitted, OverAllocation
from services.lifecycle.events import MaterialAllocated, MaterialConsumed
from services.lifecycle.status import AllocationStatus, ensure_transition
from services.lifecycle.unit_of_work import LifecycleUnitOfWork


def allocation_status_for(quantity: float, required: float) -> AllocationStatus:
    return AllocationStatus.ALLOCATED if quantity == required else AllocationStatus.PARTIAL


def allocate(uow: LifecycleUnitOfWork, allocation: MaterialAllocation, quantity: float) -> MaterialAllocation:
    """Set the allocated quantity; it replaces, not adds to, the previous value."""
    if quantity <= 0:
        raise InvalidQuantity(f"allocation quantity must be positive, got {quantity}")
    if quantity > allocation.quantity_required:
        raise OverAllocation(allocation.id, quantity, allocation.quantity_required)

    target = allocation_status_for(quantity, allocation.quantity_required)
    # Validate before touching any field so a rejected call leaves the row as it was
    ensure_transition("material_allocation", allocation.status, target)

    allocation.quantity_allocated = quantity
    allocation.allocation_date = utcnow()
    uow.transition("material_allocation", allocation, target, validate=False)
    uow.emit(MaterialAllocated(allocation.batch_id, allocation.id, allocation.material_id, quantity, target.value))
    return allocation


def consume(uow: LifecycleUnitOfWork, allocation: MaterialAllocation) -> MaterialAllocation:
    uow.transition("material_allocation", allocation, AllocationStatus.CONSUMED)
    uow.emit(MaterialConsumed(allocation.batch_id, allocation.id))
    return allocation


def adjust_required(uow: LifecycleUnitOfWork, allocation: MaterialAllocation, quantity_required: float) -> MaterialAllocation:
    if allocation.quantity_allocated > 0 or allocation.status != AllocationStatus.PENDING:
        raise OperationNotPermitted(
            f"allocation {allocation.id}: required quantity is fixed once material has been allocated"
        )
    if quantity_required <= 0:
        raise InvalidQuantity(f"required quantity must be positive, got {quantity_required}")
    previous = allocation.quantity_required
    allocation.quantity_required = quantity_required
    uow.record(
        "material_allocation.adjust_required",
        "material_allocation",
        allocation,
        {"from": previous, "to": quantity_required},
    )
    return allocation


def ensure_deletable(allocation: MaterialAllocation) -> None:
    if allocation.status != AllocationStatus.PENDING:
        raise OperationNotPermitted(
            f"allocation {allocation.id} is {allocation.status.value}; only pending allocations can be deleted"
        )
