from __future__ import annotations


class LifecycleError(Exception):
    """Base class for errors surfaced to the caller. No mutation has been committed."""

    status_code = 400
    code = "lifecycle_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LifecycleError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransition(LifecycleError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"{entity} cannot move from {current} to {target}")
        self.entity = entity
        self.current = current
        self.target = target


class OverAllocation(LifecycleError):
    status_code = 422
    code = "over_allocation"

    def __init__(self, allocation_id: str, quantity: float, required: float):
        super().__init__(f"allocation {allocation_id}: quantity {quantity} exceeds required {required}")
        self.allocation_id = allocation_id
        self.quantity = quantity
        self.required = required


class InvalidQuantity(LifecycleError):
    status_code = 422
    code = "invalid_quantity"


class DuplicateStepOrder(LifecycleError):
    status_code = 409
    code = "duplicate_step_order"

    def __init__(self, batch_id: str, step_order: int):
        super().__init__(f"batch {batch_id} already has a step with order {step_order}")
        self.batch_id = batch_id
        self.step_order = step_order


class InvalidStepOrder(LifecycleError):
    status_code = 422
    code = "invalid_step_order"


class DuplicateMaterialAllocation(LifecycleError):
    status_code = 409
    code = "duplicate_material_allocation"

    def __init__(self, batch_id: str, material_id: str):
        super().__init__(f"material {material_id} is already allocated to batch {batch_id}")
        self.batch_id = batch_id
        self.material_id = material_id


class OperationNotPermitted(LifecycleError):
    status_code = 409
    code = "operation_not_permitted"


class NotificationDeliveryFailed(Exception):
    """Outbound delivery failure. Logged by the dispatcher, never surfaced to callers."""

    def __init__(self, topic: str, target: str, reason: str):
        super().__init__(f"{topic} -> {target}: {reason}")
        self.topic = topic
        self.target = target
        self.reason = reason
