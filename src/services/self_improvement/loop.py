"""One self-improvement loop attempt.

Stages, each bounded by the stage timeout:
    1. Pipeline run over the full catalog, or over a freshly built canary
       subset (canary state then points at the new hotlist)
    2. Quality gate, with the canary auto-accept threshold for canary loops
    3. Proposal generation from failed metrics and confusion alerts
    4. Harness evaluation of the run against its baseline
    5. Auto-apply when policy, quality gate and harness all allow it
    6. Rollback of a recent applied change when the harness degraded
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Sequence, TypeVar
import uuid
import structlog

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import AutoApplyPolicy, canary_settings, self_improve_settings, settings
from src.db.models.learning import LearningProposal
from src.db.models.pipeline_run import RunKind
from src.db.models.self_improvement import LoopType, SelfImprovementBatch
from src.errors.exceptions import CanaryError, StageTimeoutError
from src.services.canary import build_canary_subset, read_auto_accepted_rate, write_canary_state
from src.services.catalog import normalize_catalog, read_catalog
from src.services.learning.apply import ApplyResult, ApplyRollbackManager
from src.services.learning.harness import HarnessEvaluator
from src.services.learning.proposals import GenerationOptions, ProposalGenerator
from src.services.llm.completer import Completer
from src.services.llm.embedder import Embedder
from src.services.pipeline.run import PipelineRunner, PipelineRunResult
from src.services.quality.aggregator import (
    QualityGateResult,
    build_self_correction_context,
    evaluate_quality_gate,
)
from src.taxonomy.rule_patch import NUMERIC_FIELDS, TERM_FIELDS
from src.taxonomy.store import TaxonomyStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

GATE_FAILURE_MESSAGE = "Self-improvement loop failed one or more gates."


@dataclass
class LoopAttemptResult:
    """Outcome of one attempt, stored on its run row."""
    pipeline_run_id: uuid.UUID
    passed: bool
    quality_gate: QualityGateResult
    harness_passed: bool
    failed_metrics: List[str]
    harness_delta: float
    harness_run_id: Optional[uuid.UUID] = None
    correction_context: Optional[Dict[str, Any]] = None
    learning_result: Dict[str, Any] = field(default_factory=dict)

    def to_metrics(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "quality_gate": self.quality_gate.to_dict(),
            "harness_passed": self.harness_passed,
            "failed_metrics": list(self.failed_metrics),
            "harness_delta": self.harness_delta,
            "correction_context": self.correction_context,
            "learning_result": dict(self.learning_result),
        }


def has_high_severity_schema_violations(payloads: Sequence[Dict[str, Any]]) -> bool:
    """True when any proposal payload is missing its target/reason/field or has a mistyped value."""
    for payload in payloads:
        target = str(payload.get("target_slug") or "").strip()
        reason = str(payload.get("reason") or "").strip()
        field_name = payload.get("field")
        value = payload.get("value")
        if not target or not reason or not field_name:
            return True
        if field_name in NUMERIC_FIELDS and (isinstance(value, bool) or not isinstance(value, (int, float))):
            return True
        if field_name in TERM_FIELDS and not isinstance(value, str):
            return True
    return False


def should_auto_apply(
    policy: str,
    quality_gate_passed: bool,
    harness_passed: bool,
    schema_violations: bool,
) -> bool:
    return (
        policy == AutoApplyPolicy.IF_GATE_PASSES.value
        and quality_gate_passed
        and harness_passed
        and not schema_violations
    )


def is_canary_degrade_mode(loop_type: LoopType, attempt_no: int) -> bool:
    return loop_type == LoopType.CANARY and attempt_no > 1


class LoopRunner:
    """Runs loop attempts for batches of one store."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store: TaxonomyStore,
        embedder: Embedder,
        completer: Optional[Completer] = None,
        catalog_path: Optional[str] = None,
        stage_timeout_seconds: Optional[float] = None,
        output_dir: Optional[str] = None,
    ):
        self._session_maker = session_maker
        self.store = store
        self.catalog_path = catalog_path or canary_settings.input_path
        self.stage_timeout = stage_timeout_seconds or self_improve_settings.stage_timeout_seconds
        self.output_dir = output_dir or settings.output_dir
        self.pipeline = PipelineRunner(session_maker, store, embedder, completer=completer, output_dir=self.output_dir)
        self.proposals = ProposalGenerator(session_maker, store)
        self.manager = ApplyRollbackManager(session_maker, store)
        self.harness = HarnessEvaluator(session_maker, store.store_id)
        self._log = logger.bind(component="LoopRunner", store_id=store.store_id)

    async def _stage(self, name: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.stage_timeout)
        except asyncio.TimeoutError:
            self._log.error("loop_stage_timeout", stage=name, timeout_seconds=self.stage_timeout)
            raise StageTimeoutError(name, self.stage_timeout) from None

    # =========================================================================
    # Pipeline stage
    # =========================================================================

    async def _run_full(self, batch_id: uuid.UUID) -> PipelineRunResult:
        rows = await asyncio.to_thread(read_catalog, self.catalog_path)
        return await self.pipeline.run(
            normalize_catalog(rows),
            run_kind=RunKind.FULL,
            input_path=self.catalog_path,
            batch_id=batch_id,
        )

    async def _run_canary(self, batch_id: uuid.UUID) -> PipelineRunResult:
        selection = await self._stage(
            "canary_build",
            asyncio.to_thread(
                build_canary_subset,
                self.catalog_path,
                store_id=self.store.store_id,
                output_dir=self.output_dir,
            ),
        )
        rows = await asyncio.to_thread(read_catalog, selection.subset_path)
        result = await self._stage("pipeline_run", self.pipeline.run(
            normalize_catalog(rows),
            run_kind=RunKind.CANARY,
            input_path=selection.subset_path,
            batch_id=batch_id,
        ))
        if not result.hotlist_path:
            raise CanaryError(f"Canary run {result.run_id} did not produce a confusion hotlist")
        write_canary_state(canary_settings.state_path, str(result.run_id), result.hotlist_path)
        return result

    # =========================================================================
    # Attempt
    # =========================================================================

    async def run_attempt(
        self,
        batch: SelfImprovementBatch,
        sequence_no: int,
        attempt_no: int,
        previous_failed_metrics: Sequence[str] = (),
    ) -> LoopAttemptResult:
        """Execute one attempt of loop ``sequence_no``.

        Raises:
            StageTimeoutError: A stage exceeded the stage timeout
            CanaryError: Canary subset or canary gate stat unavailable
            TaxonomyLoopError: Any other stage failure
        """
        canary = batch.loop_type == LoopType.CANARY
        degrade_mode = is_canary_degrade_mode(batch.loop_type, attempt_no)
        options = GenerationOptions(
            max_proposals=self_improve_settings.max_proposals_per_loop,
            min_confidence=self_improve_settings.degrade_min_proposal_confidence if degrade_mode else 0.0,
            allow_structural=not degrade_mode,
        )
        log = self._log.bind(batch_id=str(batch.id), sequence_no=sequence_no, attempt_no=attempt_no)
        log.info("loop_attempt_started", loop_type=batch.loop_type.value, degrade_mode=degrade_mode)

        if canary:
            run = await self._run_canary(batch.id)
        else:
            run = await self._stage("pipeline_run", self._run_full(batch.id))

        canary_threshold = None
        if canary:
            read_auto_accepted_rate(run.stats)
            canary_threshold = canary_settings.auto_accept_threshold
        quality_gate = evaluate_quality_gate(run.stats, canary_threshold=canary_threshold)

        alerts = [a for a in run.stats.get("top_confusion_alerts") or [] if isinstance(a, dict)]
        merged_failed = list(dict.fromkeys([*quality_gate.failed_metrics, *previous_failed_metrics]))

        proposals: List[LearningProposal] = await self._stage(
            "proposal_generation",
            self.proposals.generate(
                batch_id=batch.id,
                run_id=run.run_id,
                failed_metrics=merged_failed,
                alerts=alerts,
                options=options,
            ),
        )
        violations = has_high_severity_schema_violations([dict(p.payload or {}) for p in proposals])

        harness = await self._stage(
            "harness_evaluation",
            self.harness.evaluate(run.run_id, batch_id=batch.id),
        )

        apply_result = ApplyResult()
        if should_auto_apply(batch.auto_apply_policy, quality_gate.passed, harness.passed, violations):
            apply_result = await self._stage(
                "apply",
                self.manager.apply_learning_proposals(
                    harness,
                    batch_id=batch.id,
                    run_id=run.run_id,
                    max_structural_changes=0 if degrade_mode else batch.max_structural_changes,
                    sequence_no=sequence_no,
                ),
            )

        rolled_back = None
        if not harness.passed and self_improve_settings.rollback_on_degrade:
            rolled_back = await self._stage(
                "rollback",
                self.manager.rollback_on_degrade(
                    batch_id=batch.id,
                    sequence_no=sequence_no,
                    watch_loops=self_improve_settings.post_apply_watch_loops,
                ),
            )

        passed = quality_gate.passed and harness.passed
        failed_metrics = list(dict.fromkeys([*merged_failed, *harness.failed_metrics]))
        learning_result = {
            "proposals_generated": len(proposals),
            "proposals_applied": apply_result.applied,
            "structural_applies": apply_result.structural_applied,
            "auto_applied_updates": apply_result.applied,
            "rollback_triggered": rolled_back is not None,
            "rollback_change_id": str(rolled_back.id) if rolled_back else None,
            "gate_failed_metrics": failed_metrics,
            "harness_passed": harness.passed,
            "quality_gate_passed": quality_gate.passed,
            "benchmark_snapshot_id": str(harness.benchmark_snapshot_id) if harness.benchmark_snapshot_id else None,
            "harness_failed_metrics": list(harness.failed_metrics),
            "harness_metric_scores": dict(harness.metric_scores),
            "high_severity_schema_violations": violations,
            "candidate_fixes": [str((p.payload or {}).get("reason", "")) for p in proposals],
            "canary_retry_degrade_mode": degrade_mode,
            "proposal_min_confidence": options.min_confidence,
            "structural_proposals_allowed": options.allow_structural,
        }

        log.info(
            "loop_attempt_finished",
            passed=passed,
            pipeline_run_id=str(run.run_id),
            proposals=len(proposals),
            applied=apply_result.applied,
            rollback_triggered=rolled_back is not None,
        )
        return LoopAttemptResult(
            pipeline_run_id=run.run_id,
            harness_run_id=harness.harness_run_id,
            passed=passed,
            quality_gate=quality_gate,
            harness_passed=harness.passed,
            failed_metrics=failed_metrics,
            harness_delta=harness.harness_delta,
            correction_context=None if passed else build_self_correction_context(GATE_FAILURE_MESSAGE, run.stats),
            learning_result=learning_result,
        )


def default_runner_factory(
    session_maker: async_sessionmaker[AsyncSession],
    embedder: Optional[Embedder] = None,
    completer: Optional[Completer] = None,
):
    """Factory building a ``LoopRunner`` per store with the configured capabilities."""
    from src.services.llm import get_completer, get_embedder

    embedder = embedder or get_embedder()
    completer = completer or get_completer()

    def build(store_id: str) -> LoopRunner:
        return LoopRunner(session_maker, TaxonomyStore(session_maker, store_id), embedder, completer)

    return build
