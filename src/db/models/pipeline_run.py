"""Pipeline run, per-product assignment and QA feedback ORM models."""
from sqlalchemy import String, Text, Integer, Float, Boolean, DateTime, ForeignKey, Index
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from src.db.base import Base, UUIDMixin, CreatedAtMixin, JSONType
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, List
import uuid


class RunKind(PyEnum):
    """Scope of a pipeline run."""
    FULL = "full"
    CANARY = "canary"


class PipelineRunStatus(PyEnum):
    """Lifecycle of a pipeline run.

    States:
        - running: Classification in progress
        - completed: Stats persisted
        - failed: Stopped with an error (excluded from baselines)
    """
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineRun(Base, UUIDMixin, CreatedAtMixin):
    """One classification pass over a catalog or canary subset."""

    __tablename__ = "pipeline_runs"

    store_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    run_kind: Mapped[RunKind] = mapped_column(
        SQLEnum(
            RunKind,
            name="run_kind",
            native_enum=False,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    status: Mapped[PipelineRunStatus] = mapped_column(
        SQLEnum(
            PipelineRunStatus,
            name="pipeline_run_status",
            native_enum=False,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=PipelineRunStatus.RUNNING,
        index=True,
    )
    taxonomy_version: Mapped[str] = mapped_column(String(64), nullable=False)
    input_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    stats: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    hotlist_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    assignments: Mapped[List["ProductAssignment"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<PipelineRun(id={self.id}, kind='{self.run_kind}', status='{self.status}')>"


class ProductAssignment(Base, UUIDMixin):
    """Persisted decision engine output for one product in one run."""

    __tablename__ = "product_assignments"
    __table_args__ = (
        Index("ix_product_assignments_run_sku", "run_id", "sku", unique=True),
    )

    run_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    sku: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_slug: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    top2_slug: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    top2_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    margin: Mapped[float] = mapped_column(Float, nullable=False)
    decision: Mapped[str] = mapped_column(String(16), nullable=False)
    reasons: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    contradiction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    attribute_values: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    uncertainty_reasons: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    run: Mapped["PipelineRun"] = relationship(back_populates="assignments")


class QAFeedback(Base, UUIDMixin, CreatedAtMixin):
    """Human review verdict for one product of a run."""

    __tablename__ = "qa_feedback"
    __table_args__ = (
        Index("ix_qa_feedback_run_sku", "run_id", "sku", unique=True),
    )

    run_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sku: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    predicted_category: Mapped[str] = mapped_column(String(100), nullable=False)
    corrected_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    review_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        index=True,
        doc="pass or fail",
    )
    attributes_ok: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
