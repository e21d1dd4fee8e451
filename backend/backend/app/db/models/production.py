from __future__ import annotations
from datetime import date, datetime
from sqlalchemy import String, DateTime, Date, Integer, Float, Text, JSON, ForeignKey, Enum, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt
from services.lifecycle.status import (
    AllocationStatus,
    BatchStatus,
    RequestPriority,
    RequestStatus,
    StepStatus,
)


class ProductionRequest(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "plc_production_request"
    request_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    product_name: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[RequestPriority] = mapped_column(Enum(RequestPriority), default=RequestPriority.NORMAL, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    specifications: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[RequestStatus] = mapped_column(Enum(RequestStatus), default=RequestStatus.RECEIVED, nullable=False, index=True)

    batches: Mapped[list[ProductionBatch]] = relationship(back_populates="request", order_by="ProductionBatch.created_at")


class ProductionBatch(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "plc_production_batch"
    batch_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    request_id: Mapped[str] = mapped_column(ForeignKey("plc_production_request.id"), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    scheduled_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[BatchStatus] = mapped_column(Enum(BatchStatus), default=BatchStatus.PENDING, nullable=False, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    request: Mapped[ProductionRequest] = relationship(back_populates="batches")
    steps: Mapped[list[ProductionStep]] = relationship(
        back_populates="batch", order_by="ProductionStep.step_order", cascade="all, delete-orphan"
    )
    allocations: Mapped[list[MaterialAllocation]] = relationship(
        back_populates="batch", order_by="MaterialAllocation.created_at", cascade="all, delete-orphan"
    )


class ProductionStep(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "plc_production_step"
    batch_id: Mapped[str] = mapped_column(ForeignKey("plc_production_batch.id"), nullable=False, index=True)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String(100), nullable=False)
    machine_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    scheduled_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    scheduled_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    machine_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    operator_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[StepStatus] = mapped_column(Enum(StepStatus), default=StepStatus.PENDING, nullable=False, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    batch: Mapped[ProductionBatch] = relationship(back_populates="steps")

    __table_args__ = (UniqueConstraint("batch_id", "step_order", name="uq_plc_step_batch_order"),)


class MaterialAllocation(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "plc_material_allocation"
    batch_id: Mapped[str] = mapped_column(ForeignKey("plc_production_batch.id"), nullable=False, index=True)
    material_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # material inventory service id
    quantity_required: Mapped[float] = mapped_column(Float, nullable=False)
    quantity_allocated: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    unit_of_measure: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[AllocationStatus] = mapped_column(Enum(AllocationStatus), default=AllocationStatus.PENDING, nullable=False, index=True)
    allocation_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    batch: Mapped[ProductionBatch] = relationship(back_populates="allocations")

    __table_args__ = (UniqueConstraint("batch_id", "material_id", name="uq_plc_alloc_batch_material"),)


Index("ix_plc_batch_request_status", ProductionBatch.request_id, ProductionBatch.status)
Index("ix_plc_step_batch_status", ProductionStep.batch_id, ProductionStep.status)
