"""Domain events raised by lifecycle use cases and the peer notifications they imply."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

# topic -> (settings service prefix, path); see NotificationDispatcher.resolve_target
TOPIC_ROUTES: dict[str, tuple[str, str]] = {
    "batch.created.queue": ("machine_queue", "/queue/add"),
    "batch.cancelled": ("machine_queue", "/queue/cancel"),
    "step.completed": ("machine_queue", "/queue/complete-step"),
    "batch.created.materials": ("material_inventory", "/inventory/reserve"),
    "material.allocated": ("material_inventory", "/materials/issue"),
    "request.status_changed": ("feedback_service", "/feedback/status-update"),
    "quality.issue_detected": ("feedback_service", "/notifications"),
}

# Request statuses the feedback service is told about
NOTIFIED_REQUEST_STATUSES = frozenset({"in_production", "completed", "cancelled"})


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class DomainEvent:
    entity_type = ""

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def entity_id(self) -> str:
        return ""

    def notifications(self) -> list[tuple[str, dict]]:
        return []


@dataclass
class BatchCreated(DomainEvent):
    batch_id: str
    batch_number: str
    request_id: str
    product_name: str
    priority: str
    steps: list[dict] = field(default_factory=list)
    materials: list[dict] = field(default_factory=list)
    entity_type = "batch"

    @property
    def entity_id(self) -> str:
        return self.batch_id

    def notifications(self) -> list[tuple[str, dict]]:
        out: list[tuple[str, dict]] = []
        if self.steps:
            out.append(("batch.created.queue", {
                "batchId": self.batch_id,
                "batchNumber": self.batch_number,
                "requestId": self.request_id,
                "productName": self.product_name,
                "priority": self.priority,
                "steps": self.steps,
            }))
        if self.materials:
            out.append(("batch.created.materials", {
                "batchId": self.batch_id,
                "materials": self.materials,
            }))
        return out


@dataclass
class BatchStatusChanged(DomainEvent):
    request_id: str
    batch_id: str
    from_status: str
    to_status: str
    entity_type = "batch"

    @property
    def entity_id(self) -> str:
        return self.batch_id


@dataclass
class BatchCompleted(DomainEvent):
    request_id: str
    batch_id: str
    entity_type = "batch"

    @property
    def entity_id(self) -> str:
        return self.batch_id


@dataclass
class BatchCancelled(DomainEvent):
    request_id: str
    batch_id: str
    entity_type = "batch"

    @property
    def entity_id(self) -> str:
        return self.batch_id

    def notifications(self) -> list[tuple[str, dict]]:
        return [("batch.cancelled", {"batchId": self.batch_id})]


@dataclass
class StepStatusChanged(DomainEvent):
    batch_id: str
    step_id: str
    from_status: str
    to_status: str
    entity_type = "step"

    @property
    def entity_id(self) -> str:
        return self.step_id


@dataclass
class StepCompleted(DomainEvent):
    batch_id: str
    step_id: str
    entity_type = "step"

    @property
    def entity_id(self) -> str:
        return self.step_id

    def notifications(self) -> list[tuple[str, dict]]:
        return [("step.completed", {"batchId": self.batch_id, "stepId": self.step_id, "status": "completed"})]


@dataclass
class RequestStatusChanged(DomainEvent):
    request_id: str
    request_number: str
    from_status: str
    to_status: str
    notes: str = ""
    entity_type = "request"

    @property
    def entity_id(self) -> str:
        return self.request_id

    def notifications(self) -> list[tuple[str, dict]]:
        if self.to_status not in NOTIFIED_REQUEST_STATUSES:
            return []
        return [("request.status_changed", {
            "requestId": self.request_number,
            "status": self.to_status,
            "notes": self.notes,
        })]


@dataclass
class MaterialAllocated(DomainEvent):
    batch_id: str
    allocation_id: str
    material_id: str
    quantity: float
    status: str
    entity_type = "material_allocation"

    @property
    def entity_id(self) -> str:
        return self.allocation_id

    def notifications(self) -> list[tuple[str, dict]]:
        return [("material.allocated", {
            "materials": [{"materialId": self.material_id, "quantity": self.quantity}],
            "productionOrderId": self.batch_id,
            "referenceNumber": f"ALLOC-{self.batch_id}-{self.allocation_id}",
            "notes": f"Material issue for batch {self.batch_id} allocation",
        })]


@dataclass
class MaterialConsumed(DomainEvent):
    batch_id: str
    allocation_id: str
    entity_type = "material_allocation"

    @property
    def entity_id(self) -> str:
        return self.allocation_id


@dataclass
class QualityIssueDetected(DomainEvent):
    feedback_id: str
    check_id: str
    title: str
    message: str
    recipient_type: str = "role"
    recipient_id: str = "production_manager"
    priority: str = "high"
    entity_type = "feedback"

    @property
    def entity_id(self) -> str:
        return self.feedback_id

    def notifications(self) -> list[tuple[str, dict]]:
        return [("quality.issue_detected", {
            "feedbackId": self.feedback_id,
            "type": "quality_issue",
            "title": self.title,
            "message": self.message,
            "recipientType": self.recipient_type,
            "recipientId": self.recipient_id,
            "priority": self.priority,
        })]


def step_queue_entry(step) -> dict:
    return {
        "stepId": step.id,
        "stepName": step.step_name,
        "machineType": step.machine_type,
        "scheduledStartTime": _iso(step.scheduled_start),
        "scheduledEndTime": _iso(step.scheduled_end),
    }


def material_reservation_entry(allocation) -> dict:
    return {
        "materialId": allocation.material_id,
        "quantityRequired": allocation.quantity_required,
        "unitOfMeasure": allocation.unit_of_measure,
    }
