"""Learning loop: proposals, apply/rollback, benchmark, harness, QA feedback."""
from src.services.learning.proposals import (
    GenerationOptions,
    ProposalCandidate,
    ProposalGenerator,
    QAFailRow,
    generate_proposals,
)
from src.services.learning.apply import (
    LATEST_APPLIED,
    AppliedChangeRecord,
    ApplyResult,
    ApplyRollbackManager,
)
from src.services.learning.benchmark import BenchmarkBuilder, snapshot_hash
from src.services.learning.harness import (
    HarnessEvaluator,
    HarnessResult,
    HarnessThresholds,
    evaluate_stats,
)
from src.services.learning.qa_feedback import (
    QAFeedbackImporter,
    QAImportResult,
    QARow,
    compute_accuracy,
    read_qa_file,
    resolve_category_label,
)

__all__ = [
    "GenerationOptions",
    "ProposalCandidate",
    "ProposalGenerator",
    "QAFailRow",
    "generate_proposals",
    "LATEST_APPLIED",
    "AppliedChangeRecord",
    "ApplyResult",
    "ApplyRollbackManager",
    "BenchmarkBuilder",
    "snapshot_hash",
    "HarnessEvaluator",
    "HarnessResult",
    "HarnessThresholds",
    "evaluate_stats",
    "QAFeedbackImporter",
    "QAImportResult",
    "QARow",
    "compute_accuracy",
    "read_qa_file",
    "resolve_category_label",
]
