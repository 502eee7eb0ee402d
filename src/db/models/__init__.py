"""Database models for the taxonomy classifier and its learning loop."""
from src.db.models.taxonomy import TaxonomyVersion, TaxonomyHead
from src.db.models.pipeline_run import (
    PipelineRun,
    PipelineRunStatus,
    RunKind,
    ProductAssignment,
    QAFeedback,
)
from src.db.models.learning import (
    LearningProposal,
    ProposalKind,
    ProposalStatus,
    STRUCTURAL_KINDS,
    AppliedChange,
    AppliedChangeStatus,
    ProposalDiff,
    RollbackEvent,
    BenchmarkSnapshot,
    HarnessRun,
)
from src.db.models.self_improvement import (
    SelfImprovementBatch,
    SelfImprovementRun,
    BatchStatus,
    RunStatus,
    LoopType,
)
from src.db.models.run_log import RunLog

__all__ = [
    # Taxonomy version chain
    "TaxonomyVersion",
    "TaxonomyHead",
    # Pipeline runs
    "PipelineRun",
    "PipelineRunStatus",
    "RunKind",
    "ProductAssignment",
    "QAFeedback",
    # Learning loop
    "LearningProposal",
    "ProposalKind",
    "ProposalStatus",
    "STRUCTURAL_KINDS",
    "AppliedChange",
    "AppliedChangeStatus",
    "ProposalDiff",
    "RollbackEvent",
    "BenchmarkSnapshot",
    "HarnessRun",
    # Orchestration
    "SelfImprovementBatch",
    "SelfImprovementRun",
    "BatchStatus",
    "RunStatus",
    "LoopType",
    # Tracing
    "RunLog",
]
