"""Self-improvement batch and run ORM models."""
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from src.db.base import Base, UUIDMixin, CreatedAtMixin, JSONType, utcnow
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, List
import uuid


class LoopType(PyEnum):
    """Which catalog a loop classifies."""
    CANARY = "canary"
    FULL = "full"


class BatchStatus(PyEnum):
    """Batch lifecycle: queued -> running -> terminal."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(PyEnum):
    """Status of one attempt of one logical loop."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRIED_SUCCEEDED = "retried_succeeded"
    RETRIED_FAILED = "retried_failed"


def _enum(enum_cls: type, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda x: [e.value for e in x],
    )


class SelfImprovementBatch(Base, UUIDMixin, CreatedAtMixin):
    """A request for N self-improvement loops.

    Attributes:
        loop_type: canary or full
        requested_count: Number of logical loops
        retry_limit: Retries per loop after the first attempt
        max_structural_changes: Structural applies allowed per loop
        auto_apply_policy: if_gate_passes or never
        status: Batch state
        summary: Counters maintained by the orchestrator
        error_message: Failure reason for terminal failures
        claim_token: Rotated on every claim; writes from an older claim are ignored
    """

    __tablename__ = "self_improvement_batches"

    store_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    loop_type: Mapped[LoopType] = mapped_column(_enum(LoopType, "loop_type"), nullable=False)
    requested_count: Mapped[int] = mapped_column(Integer, nullable=False)
    retry_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    max_structural_changes: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_apply_policy: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        _enum(BatchStatus, "batch_status"),
        nullable=False,
        default=BatchStatus.QUEUED,
        index=True,
    )
    summary: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_token: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    runs: Mapped[List["SelfImprovementRun"]] = relationship(
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="SelfImprovementRun.sequence_no",
    )

    def __repr__(self) -> str:
        return f"<SelfImprovementBatch(id={self.id}, status='{self.status}')>"


class SelfImprovementRun(Base, UUIDMixin, CreatedAtMixin):
    """One attempt of one logical loop.

    At most one row per (batch_id, sequence_no) may be running; the partial
    unique index enforces it at the storage layer.
    """

    __tablename__ = "self_improvement_runs"
    __table_args__ = (
        UniqueConstraint("batch_id", "sequence_no", "attempt_no", name="uq_si_run_attempt"),
        Index(
            "uq_si_run_single_running",
            "batch_id",
            "sequence_no",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
    )

    batch_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("self_improvement_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence_no: Mapped[int] = mapped_column(Integer, nullable=False)
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[RunStatus] = mapped_column(
        _enum(RunStatus, "si_run_status"),
        nullable=False,
        default=RunStatus.RUNNING,
        index=True,
    )
    pipeline_run_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    harness_run_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    metrics: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    batch: Mapped["SelfImprovementBatch"] = relationship(back_populates="runs")

    def __repr__(self) -> str:
        return (
            f"<SelfImprovementRun(batch={self.batch_id}, seq={self.sequence_no}, "
            f"attempt={self.attempt_no}, status='{self.status}')>"
        )
