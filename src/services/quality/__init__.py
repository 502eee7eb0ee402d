"""Run quality metrics, quality gate and confusion hotlist.

Key Components:
    - compute_run_stats: Single reduction pass over a run's decisions
    - evaluate_quality_gate: Compare run stats against quality targets
    - build_self_correction_context: Failed metrics and candidate fixes
    - build_confusion_hotlist: Rank confusing category pairs
"""
from src.services.quality.aggregator import (
    QualityGateResult,
    QualityTargets,
    build_candidate_fixes,
    build_self_correction_context,
    compute_run_stats,
    confidence_histogram,
    evaluate_quality_gate,
    top_confusion_alerts,
)
from src.services.quality.hotlist import (
    HOTLIST_COLUMNS,
    HotlistRow,
    build_confusion_hotlist,
    hotlist_filename,
    latest_hotlist,
    read_hotlist,
    write_hotlist,
)

__all__ = [
    "QualityGateResult",
    "QualityTargets",
    "build_candidate_fixes",
    "build_self_correction_context",
    "compute_run_stats",
    "confidence_histogram",
    "evaluate_quality_gate",
    "top_confusion_alerts",
    "HOTLIST_COLUMNS",
    "HotlistRow",
    "build_confusion_hotlist",
    "hotlist_filename",
    "latest_hotlist",
    "read_hotlist",
    "write_hotlist",
]
