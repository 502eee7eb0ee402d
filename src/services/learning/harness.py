"""Harness evaluator: the pass/fail gate between candidate and baseline runs.

Checks, all evaluated so operators see every failure at once:
    - benchmark_sample_size: snapshot must reach the configured minimum
    - fallback_category_rate / needs_review_rate: candidate absolute ceilings
    - l1_delta / l2_delta / l3_delta: candidate minus baseline accuracy,
      only when both runs carry the accuracy

Every evaluation is persisted as a ``harness_runs`` row.
"""
from typing import Any, Dict, List, Optional
import uuid
import structlog

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import harness_settings, self_improve_settings
from src.db.models.learning import BenchmarkSnapshot, HarnessRun
from src.db.models.pipeline_run import PipelineRun
from src.errors.exceptions import ValidationError
from src.services.learning.benchmark import BenchmarkBuilder
from src.services.pipeline.run import latest_completed_run

logger = structlog.get_logger(__name__)

ACCURACY_TIERS = ("l1", "l2", "l3")


class HarnessThresholds(BaseModel):
    """Gate thresholds; defaults come from settings."""

    model_config = ConfigDict(frozen=True)

    min_sample_size: int = 50
    max_fallback_rate: float = 0.05
    max_needs_review_rate: float = 0.35
    min_l1_delta: float = 0.0
    min_l2_delta: float = 0.0
    min_l3_delta: float = 0.0

    @classmethod
    def from_settings(cls) -> "HarnessThresholds":
        return cls(
            min_sample_size=self_improve_settings.gate_min_sample_size,
            max_fallback_rate=harness_settings.max_fallback_rate,
            max_needs_review_rate=harness_settings.max_needs_review_rate,
            min_l1_delta=harness_settings.min_l1_delta,
            min_l2_delta=harness_settings.min_l2_delta,
            min_l3_delta=harness_settings.min_l3_delta,
        )


class HarnessResult(BaseModel):
    """Immutable outcome of one harness evaluation."""

    model_config = ConfigDict(frozen=True)

    passed: bool
    metric_scores: Dict[str, float] = Field(default_factory=dict)
    failed_metrics: List[str] = Field(default_factory=list)
    candidate_run_id: uuid.UUID
    baseline_run_id: Optional[uuid.UUID] = None
    benchmark_snapshot_id: Optional[uuid.UUID] = None
    harness_run_id: Optional[uuid.UUID] = None

    @property
    def harness_delta(self) -> float:
        """Mean accuracy-tier delta."""
        deltas = [self.metric_scores.get(f"{tier}_delta", 0.0) for tier in ACCURACY_TIERS]
        return sum(deltas) / len(deltas)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_stats(
    candidate_stats: Dict[str, Any],
    baseline_stats: Dict[str, Any],
    benchmark_sample_size: int,
    thresholds: HarnessThresholds,
) -> tuple:
    """Pure gate computation.

    Returns:
        (metric_scores, failed_metrics)
    """
    failed: List[str] = []
    if benchmark_sample_size < thresholds.min_sample_size:
        failed.append("benchmark_sample_size")

    fallback_rate = _as_number(candidate_stats.get("fallback_category_rate"))
    review_rate = _as_number(candidate_stats.get("needs_review_rate"))
    if fallback_rate is not None and fallback_rate > thresholds.max_fallback_rate:
        failed.append("fallback_category_rate")
    if review_rate is not None and review_rate > thresholds.max_needs_review_rate:
        failed.append("needs_review_rate")

    scores: Dict[str, float] = {
        "benchmark_sample_size": float(benchmark_sample_size),
        "candidate_fallback_category_rate": fallback_rate or 0.0,
        "candidate_needs_review_rate": review_rate or 0.0,
    }

    for tier in ACCURACY_TIERS:
        candidate = _as_number(candidate_stats.get(f"{tier}_accuracy"))
        baseline = _as_number(baseline_stats.get(f"{tier}_accuracy"))
        delta = candidate - baseline if candidate is not None and baseline is not None else 0.0
        scores[f"{tier}_delta"] = delta
        if candidate is not None and baseline is not None and delta < getattr(thresholds, f"min_{tier}_delta"):
            failed.append(f"{tier}_delta")

    for key in ("fallback_category_rate", "needs_review_rate"):
        candidate = _as_number(candidate_stats.get(key))
        baseline = _as_number(baseline_stats.get(key))
        scores[f"{key}_delta"] = candidate - baseline if candidate is not None and baseline is not None else 0.0

    return scores, list(dict.fromkeys(failed))


class HarnessEvaluator:
    """Evaluates candidate runs for one store."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store_id: str,
        thresholds: Optional[HarnessThresholds] = None,
    ):
        self._session_maker = session_maker
        self.store_id = store_id
        self.thresholds = thresholds or HarnessThresholds.from_settings()
        self.benchmarks = BenchmarkBuilder(session_maker, store_id)
        self._log = logger.bind(component="HarnessEvaluator", store_id=store_id)

    async def _resolve_snapshot(self, snapshot_id: Optional[uuid.UUID]) -> BenchmarkSnapshot:
        snapshot = await self.benchmarks.get(snapshot_id) if snapshot_id else None
        if snapshot is None:
            snapshot = await self.benchmarks.latest()
        if snapshot is None or snapshot.sample_size < self.thresholds.min_sample_size:
            self._log.info(
                "benchmark_snapshot_rebuild",
                previous_sample_size=snapshot.sample_size if snapshot else None,
                min_sample_size=self.thresholds.min_sample_size,
            )
            snapshot = await self.benchmarks.build()
        return snapshot

    async def evaluate(
        self,
        candidate_run_id: uuid.UUID,
        baseline_run_id: Optional[uuid.UUID] = None,
        benchmark_snapshot_id: Optional[uuid.UUID] = None,
        batch_id: Optional[uuid.UUID] = None,
    ) -> HarnessResult:
        """Compare a candidate run against its baseline and persist the verdict.

        Args:
            candidate_run_id: Run under evaluation
            baseline_run_id: Defaults to the most recent non-failed other run
            benchmark_snapshot_id: Defaults to the latest snapshot
            batch_id: Self-improvement batch scope stored on the record

        Raises:
            ValidationError: Candidate run, or an explicit baseline run, missing
                or belonging to another store
        """
        async with self._session_maker() as session:
            candidate = await session.get(PipelineRun, candidate_run_id)
            if candidate is None or candidate.store_id != self.store_id:
                raise ValidationError(f"Candidate run {candidate_run_id} not found for harness evaluation")

            if baseline_run_id is not None:
                baseline = await session.get(PipelineRun, baseline_run_id)
                if baseline is None or baseline.store_id != self.store_id:
                    raise ValidationError(f"Baseline run {baseline_run_id} not found for store {self.store_id}")
            else:
                baseline = await latest_completed_run(session, self.store_id, exclude_run_id=candidate_run_id)
            candidate_stats = dict(candidate.stats or {})
            baseline_stats = dict(baseline.stats or {}) if baseline else {}
            resolved_baseline_id = baseline.id if baseline else None

        snapshot = await self._resolve_snapshot(benchmark_snapshot_id)
        scores, failed = evaluate_stats(candidate_stats, baseline_stats, snapshot.sample_size, self.thresholds)

        record = HarnessRun(
            store_id=self.store_id,
            candidate_run_id=candidate_run_id,
            baseline_run_id=resolved_baseline_id,
            benchmark_snapshot_id=snapshot.id,
            batch_id=batch_id,
            passed=not failed,
            metric_scores=scores,
            failed_metrics=failed,
            notes=None if baseline else "no_baseline_run",
        )
        async with self._session_maker() as session:
            session.add(record)
            await session.commit()

        result = HarnessResult(
            passed=not failed,
            metric_scores=scores,
            failed_metrics=failed,
            candidate_run_id=candidate_run_id,
            baseline_run_id=resolved_baseline_id,
            benchmark_snapshot_id=snapshot.id,
            harness_run_id=record.id,
        )
        if result.passed:
            self._log.info("harness_passed", candidate_run_id=str(candidate_run_id), metric_scores=scores)
        else:
            self._log.warning(
                "harness_failed",
                candidate_run_id=str(candidate_run_id),
                failed_metrics=failed,
                metric_scores=scores,
            )
        return result
