from __future__ import annotations
from sqlalchemy import String, Float, Text, ForeignKey, Enum, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt
from services.lifecycle.status import CheckType, QualityResult


class ProductionFeedback(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "plc_production_feedback"
    feedback_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    batch_id: Mapped[str | None] = mapped_column(ForeignKey("plc_production_batch.id"), nullable=True, index=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Derived from quality checks; null when there are none
    quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    checks: Mapped[list[QualityCheck]] = relationship(
        back_populates="feedback", order_by="QualityCheck.created_at", cascade="all, delete-orphan"
    )


class QualityCheck(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "plc_quality_check"
    check_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    feedback_id: Mapped[str] = mapped_column(ForeignKey("plc_production_feedback.id"), nullable=False, index=True)
    step_id: Mapped[str | None] = mapped_column(ForeignKey("plc_production_step.id"), nullable=True, index=True)
    check_name: Mapped[str] = mapped_column(String(255), nullable=False)
    check_type: Mapped[CheckType] = mapped_column(Enum(CheckType), default=CheckType.OTHER, nullable=False)
    result: Mapped[QualityResult] = mapped_column(Enum(QualityResult), default=QualityResult.PENDING, nullable=False, index=True)
    inspector: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    feedback: Mapped[ProductionFeedback] = relationship(back_populates="checks")


Index("ix_plc_qc_feedback_result", QualityCheck.feedback_id, QualityCheck.result)
