"""Run quality aggregation.

This module reduces a run's per-product decisions into the stats stored on
the pipeline run, and judges those stats against quality targets.

Key Functions:
    - compute_run_stats: Counts, rates, histogram and confusion alerts
    - evaluate_quality_gate: Pass/fail against targets (+ optional canary threshold)
    - build_self_correction_context: Failure summary for a failed loop attempt

Stats produced here are plain JSON-able dicts; readers must tolerate missing
keys since older runs may lack newer fields.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from src.models.assignment import HISTOGRAM_BUCKETS, CategoryAssignment, ConfusionAlert, ProductDecision
from src.services.canary.gate import is_gate_passing

LOW_MARGIN_THRESHOLD = 0.12
TOP_ALERT_LIMIT = 10


@dataclass(frozen=True)
class QualityTargets:
    """Pre-QA quality targets for a run."""
    auto_accepted_rate: float = 0.7
    fallback_category_rate: float = 0.05
    needs_review_rate: float = 0.3
    attribute_validation_fail_rate: float = 0.08

    def as_stats(self) -> Dict[str, float]:
        return {
            "auto_accepted_rate_target": self.auto_accepted_rate,
            "fallback_category_rate_target": self.fallback_category_rate,
            "needs_review_rate_target": self.needs_review_rate,
            "attribute_validation_fail_rate_target": self.attribute_validation_fail_rate,
        }


@dataclass
class QualityGateResult:
    """Outcome of a quality gate evaluation."""
    passed: bool
    base_passed: bool
    canary_threshold_passed: bool
    failed_metrics: List[str] = field(default_factory=list)
    base_failed_metrics: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "base_passed": self.base_passed,
            "canary_threshold_passed": self.canary_threshold_passed,
            "failed_metrics": list(self.failed_metrics),
            "base_failed_metrics": list(self.base_failed_metrics),
            "metrics": dict(self.metrics),
        }


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _rate(count: int, total: int) -> float:
    return 0.0 if total == 0 else count / total


# =============================================================================
# Reduction
# =============================================================================

def confidence_histogram(assignments: Sequence[CategoryAssignment]) -> Dict[str, int]:
    """Bucket confidences into five 0.2-wide bins; 1.0 falls in the last."""
    histogram = {bucket: 0 for bucket in HISTOGRAM_BUCKETS}
    for assignment in assignments:
        index = min(len(HISTOGRAM_BUCKETS) - 1, int(assignment.confidence / 0.2))
        histogram[HISTOGRAM_BUCKETS[index]] += 1
    return histogram


def top_confusion_alerts(
    assignments: Sequence[CategoryAssignment],
    limit: int = TOP_ALERT_LIMIT,
) -> List[ConfusionAlert]:
    """Per-category counters for review-bound assignments, worst first."""
    counters: Dict[str, Dict[str, int]] = defaultdict(
        lambda: {"affected": 0, "low_margin": 0, "contradiction": 0, "fallback": 0}
    )
    for assignment in assignments:
        low_margin = assignment.margin < LOW_MARGIN_THRESHOLD
        contradicted = assignment.contradiction_count > 0
        if assignment.decision == "auto" and not low_margin and not contradicted:
            continue
        counter = counters[assignment.category_slug]
        counter["affected"] += 1
        counter["low_margin"] += int(low_margin)
        counter["contradiction"] += int(contradicted)
        counter["fallback"] += int(assignment.is_fallback)

    alerts = [
        ConfusionAlert(
            category_slug=slug,
            affected_count=counter["affected"],
            low_margin_count=counter["low_margin"],
            contradiction_count=counter["contradiction"],
            fallback_count=counter["fallback"],
        )
        for slug, counter in counters.items()
    ]
    alerts.sort(key=lambda a: (-(a.contradiction_count + a.low_margin_count), -a.affected_count, a.category_slug))
    return alerts[:limit]


def compute_run_stats(
    decisions: Sequence[ProductDecision],
    targets: Optional[QualityTargets] = None,
) -> Dict[str, Any]:
    """Reduce a completed run into its stats dict.

    Must be called only after every product decision is available.

    Args:
        decisions: One decision per processed product
        targets: Quality targets recorded under ``quality_gate``

    Returns:
        Stats dict (counts, rates, histogram, alerts, distributions, gate)
    """
    targets = targets or QualityTargets()
    processed = len(decisions)
    assignments = [decision.assignment for decision in decisions]

    needs_review_count = sum(1 for d in decisions if d.needs_review)
    auto_accepted_count = sum(1 for d in decisions if d.assignment.decision == "auto" and not d.needs_review)
    fallback_count = sum(1 for a in assignments if a.is_fallback)
    contradiction_count = sum(a.contradiction_count for a in assignments)
    validation_fail_count = sum(d.attribute_validation_fail_count for d in decisions)

    distribution: Dict[str, int] = defaultdict(int)
    review_by_category: Dict[str, int] = defaultdict(int)
    filled_by_category: Dict[str, int] = defaultdict(int)
    filled = 0
    for decision in decisions:
        slug = decision.assignment.category_slug
        distribution[slug] += 1
        if decision.needs_review:
            review_by_category[slug] += 1
        if any(value not in (None, "") for value in decision.attribute_values.values()):
            filled += 1
            filled_by_category[slug] += 1

    auto_rate = _rate(auto_accepted_count, processed)
    fallback_rate = _rate(fallback_count, processed)
    review_rate = _rate(needs_review_count, processed)
    validation_rate = _rate(validation_fail_count, processed)

    stats: Dict[str, Any] = {
        "unique_products_processed": processed,
        "auto_accepted_count": auto_accepted_count,
        "needs_review_count": needs_review_count,
        "fallback_category_count": fallback_count,
        "category_contradiction_count": contradiction_count,
        "attribute_validation_fail_count": validation_fail_count,
        "auto_accepted_rate": auto_rate,
        "needs_review_rate": review_rate,
        "fallback_category_rate": fallback_rate,
        "attribute_validation_fail_rate": validation_rate,
        "variant_fill_rate": _rate(filled, processed),
        "family_distribution": dict(sorted(distribution.items())),
        "family_review_rate": {
            slug: _rate(review_by_category[slug], count) for slug, count in sorted(distribution.items())
        },
        "variant_fill_rate_by_family": {
            slug: _rate(filled_by_category[slug], count) for slug, count in sorted(distribution.items())
        },
        "confidence_histogram": confidence_histogram(assignments),
        "top_confusion_alerts": [alert.model_dump() for alert in top_confusion_alerts(assignments)],
    }
    stats["quality_gate"] = {
        **targets.as_stats(),
        "pre_qa_passed": (
            auto_rate >= targets.auto_accepted_rate
            and fallback_rate <= targets.fallback_category_rate
            and validation_rate <= targets.attribute_validation_fail_rate
            and review_rate <= targets.needs_review_rate
        ),
    }
    return stats


# =============================================================================
# Gate
# =============================================================================

def _failed_gate_metrics(stats: Dict[str, Any]) -> List[str]:
    gate = stats.get("quality_gate") if isinstance(stats.get("quality_gate"), dict) else {}
    failed: List[str] = []

    auto_rate = _as_number(stats.get("auto_accepted_rate"))
    auto_target = _as_number(gate.get("auto_accepted_rate_target"))
    if auto_rate is not None and auto_target is not None and auto_rate < auto_target:
        failed.append("auto_accepted_rate")

    fallback_rate = _as_number(stats.get("fallback_category_rate"))
    fallback_target = _as_number(gate.get("fallback_category_rate_target"))
    if fallback_rate is not None and fallback_target is not None and fallback_rate > fallback_target:
        failed.append("fallback_category_rate")

    validation_count = _as_number(stats.get("attribute_validation_fail_count"))
    validation_target = _as_number(gate.get("attribute_validation_fail_rate_target"))
    processed = max(1, int(_as_number(stats.get("unique_products_processed")) or 0))
    if validation_count is not None and validation_target is not None and validation_count / processed > validation_target:
        failed.append("attribute_validation_fail_rate")

    review_rate = _as_number(stats.get("needs_review_rate"))
    review_target = _as_number(gate.get("needs_review_rate_target"))
    if review_rate is not None and review_target is not None and review_rate > review_target:
        failed.append("needs_review_rate")

    if gate.get("pre_qa_passed") is False and not failed:
        failed.append("pre_qa_failed_unknown")
    return list(dict.fromkeys(failed))


def evaluate_quality_gate(
    stats: Dict[str, Any],
    canary_threshold: Optional[float] = None,
) -> QualityGateResult:
    """Judge run stats against the targets recorded in them.

    When ``canary_threshold`` is given the run must also reach that
    ``auto_accepted_rate``; a missing rate fails that check.
    """
    base_failed = _failed_gate_metrics(stats)
    failed = list(base_failed)
    metrics: Dict[str, Any] = {
        "auto_accepted_rate": stats.get("auto_accepted_rate"),
        "fallback_category_rate": stats.get("fallback_category_rate"),
        "needs_review_rate": stats.get("needs_review_rate"),
        "quality_gate": stats.get("quality_gate") if isinstance(stats.get("quality_gate"), dict) else {},
    }

    canary_passed = True
    if canary_threshold is not None:
        rate = _as_number(stats.get("auto_accepted_rate"))
        metrics["canary_auto_accepted_threshold"] = canary_threshold
        metrics["canary_auto_accepted_rate"] = rate
        if rate is None or not is_gate_passing(rate, canary_threshold):
            canary_passed = False
            failed.append("canary_auto_accepted_rate")

    return QualityGateResult(
        passed=not failed,
        base_passed=not base_failed,
        canary_threshold_passed=canary_passed,
        failed_metrics=list(dict.fromkeys(failed)),
        base_failed_metrics=base_failed,
        metrics=metrics,
    )


_METRIC_FIXES = {
    "auto_accepted_rate": "review_category_thresholds_for_low_auto_acceptance",
    "fallback_category_rate": "tighten_fallback_rescue_rules_for_specific_families",
    "attribute_validation_fail_rate": "tighten_attribute_policy_validation_or_schema_constraints",
    "needs_review_rate": "improve_disambiguation_for_review_heavy_categories",
}


def _alerts_from_stats(stats: Dict[str, Any]) -> List[Dict[str, Any]]:
    raw = stats.get("top_confusion_alerts")
    if not isinstance(raw, list):
        return []
    alerts = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("category_slug"):
            continue
        alerts.append({
            "category_slug": str(entry["category_slug"]),
            "affected_count": int(_as_number(entry.get("affected_count")) or 0),
            "low_margin_count": int(_as_number(entry.get("low_margin_count")) or 0),
            "contradiction_count": int(_as_number(entry.get("contradiction_count")) or 0),
            "fallback_count": int(_as_number(entry.get("fallback_count")) or 0),
        })
    return alerts


def build_candidate_fixes(stats: Dict[str, Any]) -> List[str]:
    """Fix hints for failed gate metrics and the worst confusion alerts."""
    fixes = [
        _METRIC_FIXES.get(metric, f"investigate_gate_metric_{metric}")
        for metric in _failed_gate_metrics(stats)
    ]
    alerts = sorted(
        _alerts_from_stats(stats),
        key=lambda a: -(a["contradiction_count"] + a["low_margin_count"]),
    )
    fixes.extend(f"inspect_confusion_pair_{alert['category_slug']}" for alert in alerts[:3])
    return list(dict.fromkeys(fixes))


def build_self_correction_context(error: Any, stats: Dict[str, Any]) -> Dict[str, Any]:
    """Context stored on a failed loop attempt for the next retry and operators."""
    return {
        "failure_summary": str(error) if error is not None else "unknown_error",
        "last_confusion_alerts": _alerts_from_stats(stats),
        "failed_gate_metrics": _failed_gate_metrics(stats),
        "candidate_fixes": build_candidate_fixes(stats),
    }
