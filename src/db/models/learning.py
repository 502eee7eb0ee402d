"""Learning loop ORM models: proposals, applied changes, harness runs."""
from sqlalchemy import String, Text, Integer, Float, Boolean, DateTime, ForeignKey
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from src.db.base import Base, UUIDMixin, CreatedAtMixin, JSONType, utcnow
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, List
import uuid


class ProposalKind(PyEnum):
    """Kinds of rule mutations the generator may propose."""
    RULE_TERM_ADD = "rule_term_add"
    RULE_TERM_REMOVE = "rule_term_remove"
    THRESHOLD_TUNE = "threshold_tune"
    TAXONOMY_MERGE = "taxonomy_merge"
    TAXONOMY_SPLIT = "taxonomy_split"
    TAXONOMY_MOVE = "taxonomy_move"


STRUCTURAL_KINDS = frozenset({
    ProposalKind.TAXONOMY_MERGE,
    ProposalKind.TAXONOMY_SPLIT,
    ProposalKind.TAXONOMY_MOVE,
})


class ProposalStatus(PyEnum):
    """Proposal lifecycle.

    States:
        - proposed: Awaiting apply
        - applied: Mutation live in the taxonomy
        - rejected: Discarded without applying
        - rolled_back: Applied and later reverted
    """
    PROPOSED = "proposed"
    APPLIED = "applied"
    REJECTED = "rejected"
    ROLLED_BACK = "rolled_back"


class AppliedChangeStatus(PyEnum):
    """Status of an applied change."""
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"


def _enum(enum_cls: type, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda x: [e.value for e in x],
    )


class LearningProposal(Base, UUIDMixin, CreatedAtMixin):
    """A typed rule-change candidate.

    Attributes:
        store_id: Store whose taxonomy the proposal targets
        batch_id: Optional self-improvement batch scope
        run_id: Optional pipeline run the evidence came from
        kind: Proposal kind
        status: Lifecycle status
        confidence_score: Generator confidence in [0, 1]
        expected_impact_score: Expected impact in [0, 1]
        payload: {target_slug, field, action, value, reason}
        provenance: Evidence summary (sample SKUs, counts, source metric)
    """

    __tablename__ = "learning_proposals"

    store_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    batch_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    run_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    kind: Mapped[ProposalKind] = mapped_column(_enum(ProposalKind, "proposal_kind"), nullable=False)
    status: Mapped[ProposalStatus] = mapped_column(
        _enum(ProposalStatus, "proposal_status"),
        nullable=False,
        default=ProposalStatus.PROPOSED,
        index=True,
    )
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    expected_impact_score: Mapped[float] = mapped_column(Float, nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    provenance: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<LearningProposal(id={self.id}, kind='{self.kind}', status='{self.status}')>"


class AppliedChange(Base, UUIDMixin, CreatedAtMixin):
    """Reversible record of one applied proposal.

    Created exactly once per applied proposal. Rollback flips ``status``
    and points the taxonomy head back to ``version_before``.
    """

    __tablename__ = "applied_changes"

    proposal_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("learning_proposals.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    store_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    batch_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    run_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    version_before: Mapped[str] = mapped_column(String(64), nullable=False)
    version_after: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[AppliedChangeStatus] = mapped_column(
        _enum(AppliedChangeStatus, "applied_change_status"),
        nullable=False,
        default=AppliedChangeStatus.APPLIED,
        index=True,
    )
    rollback_token: Mapped[uuid.UUID] = mapped_column(nullable=False, default=uuid.uuid4, unique=True)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ProposalDiff(Base, UUIDMixin, CreatedAtMixin):
    """Before/after snapshot of the rule fields a proposal touched."""

    __tablename__ = "proposal_diffs"

    proposal_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("learning_proposals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    applied_change_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("applied_changes.id", ondelete="CASCADE"),
        nullable=True,
    )
    diff: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)


class RollbackEvent(Base, UUIDMixin, CreatedAtMixin):
    """Audit row for every rollback."""

    __tablename__ = "rollback_events"

    applied_change_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("applied_changes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)


class BenchmarkSnapshot(Base, UUIDMixin, CreatedAtMixin):
    """Frozen, hashed sample of labeled and hard products."""

    __tablename__ = "benchmark_snapshots"

    store_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    items: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    source: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)


class HarnessRun(Base, UUIDMixin, CreatedAtMixin):
    """Persisted harness evaluation."""

    __tablename__ = "harness_runs"

    store_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    candidate_run_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    baseline_run_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    benchmark_snapshot_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("benchmark_snapshots.id", ondelete="SET NULL"),
        nullable=True,
    )
    batch_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    metric_scores: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    failed_metrics: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
