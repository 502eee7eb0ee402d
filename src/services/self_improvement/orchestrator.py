"""Self-improvement batch orchestrator.

``process_next_batch`` is one unit of worker work: claim the oldest queued
batch, run every unsettled sequence with retries, keep the batch summary
current after each sequence, and finalize the batch. Cancellation is
observed before every attempt, so an in-flight apply always completes.

A batch requeued by stale recovery resumes where it stopped: settled
sequences are skipped and attempt numbering continues after the highest
recorded attempt.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence
import math
import uuid
import structlog

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models.self_improvement import BatchStatus, RunStatus, SelfImprovementBatch, SelfImprovementRun
from src.services.quality.aggregator import build_self_correction_context
from src.services.self_improvement.fsm import (
    BatchEvent,
    RunEvent,
    attempt_event,
    is_sequence_settled,
    latest_attempt_per_sequence,
)
from src.services.self_improvement.loop import LoopAttemptResult, LoopRunner
from src.services.self_improvement.persistence import BatchStore

logger = structlog.get_logger(__name__)

LoopRunnerFactory = Callable[[str], LoopRunner]

_COUNTER_KEYS = (
    "completed_loops",
    "failed_loops",
    "success_count",
    "retried_success_count",
    "final_failed_count",
    "gate_pass_rate",
    "auto_applied_updates_count",
    "proposals_generated",
    "proposals_applied",
    "structural_applies",
    "rollbacks_triggered",
    "avg_harness_delta",
    "harness_delta_total",
    "harness_delta_samples",
)


def _number(value: Any) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


@dataclass
class SequenceResult:
    """Contribution of one finished sequence to the batch summary."""
    succeeded: bool = False
    retried_success: bool = False
    final_failed: bool = False
    failed_metrics: List[str] = field(default_factory=list)
    proposals_generated: int = 0
    proposals_applied: int = 0
    structural_applied: int = 0
    auto_applied_updates: int = 0
    rollbacks_triggered: int = 0
    harness_delta_total: float = 0.0
    harness_delta_samples: int = 0

    @classmethod
    def from_attempt(cls, result: LoopAttemptResult, attempt_no: int) -> "SequenceResult":
        learning = result.learning_result
        return cls(
            succeeded=result.passed and attempt_no == 1,
            retried_success=result.passed and attempt_no > 1,
            final_failed=not result.passed,
            failed_metrics=[] if result.passed else list(result.failed_metrics),
            proposals_generated=int(_number(learning.get("proposals_generated"))),
            proposals_applied=int(_number(learning.get("proposals_applied"))),
            structural_applied=int(_number(learning.get("structural_applies"))),
            auto_applied_updates=int(_number(learning.get("auto_applied_updates"))),
            rollbacks_triggered=1 if learning.get("rollback_triggered") else 0,
            harness_delta_total=result.harness_delta,
            harness_delta_samples=1,
        )


def normalize_summary(batch: SelfImprovementBatch) -> Dict[str, Any]:
    """Batch summary with every counter present and numeric."""
    source = dict(batch.summary or {})
    summary = {**source, **{key: _number(source.get(key)) for key in _COUNTER_KEYS}}
    for key in _COUNTER_KEYS:
        if key not in ("gate_pass_rate", "avg_harness_delta", "harness_delta_total"):
            summary[key] = int(summary[key])
    summary["total_loops"] = int(_number(source.get("total_loops"))) or batch.requested_count
    summary["running_sequence"] = source.get("running_sequence")
    return summary


def with_sequence_result(summary: Dict[str, Any], result: SequenceResult) -> Dict[str, Any]:
    """Fold one finished sequence into the summary counters."""
    completed = summary["completed_loops"] + 1
    success = summary["success_count"] + int(result.succeeded)
    retried = summary["retried_success_count"] + int(result.retried_success)
    final_failed = summary["final_failed_count"] + int(result.final_failed)
    samples = summary["harness_delta_samples"] + result.harness_delta_samples
    delta_total = summary["harness_delta_total"] + result.harness_delta_total
    return {
        **summary,
        "running_sequence": None,
        "completed_loops": completed,
        "failed_loops": final_failed,
        "success_count": success,
        "retried_success_count": retried,
        "final_failed_count": final_failed,
        "gate_pass_rate": (success + retried) / completed if completed else 0.0,
        "auto_applied_updates_count": summary["auto_applied_updates_count"] + result.auto_applied_updates,
        "proposals_generated": summary["proposals_generated"] + result.proposals_generated,
        "proposals_applied": summary["proposals_applied"] + result.proposals_applied,
        "structural_applies": summary["structural_applies"] + result.structural_applied,
        "rollbacks_triggered": summary["rollbacks_triggered"] + result.rollbacks_triggered,
        "harness_delta_samples": samples,
        "harness_delta_total": delta_total,
        "avg_harness_delta": delta_total / samples if samples else 0.0,
    }


@dataclass(frozen=True)
class ResumePoint:
    """Where a sequence continues after a requeue."""
    attempt_no: int
    failed_metrics: List[str]


def resume_points(runs: Sequence[SelfImprovementRun], retry_limit: int) -> Dict[int, Optional[ResumePoint]]:
    """Per recorded sequence: None when settled, else the next attempt to run."""
    points: Dict[int, Optional[ResumePoint]] = {}
    for sequence_no, run in latest_attempt_per_sequence(runs).items():
        if is_sequence_settled(run, retry_limit):
            points[sequence_no] = None
        elif run.status == RunStatus.QUEUED:
            points[sequence_no] = ResumePoint(run.attempt_no, [])
        else:
            metrics = run.metrics or {}
            failed = metrics.get("failed_metrics") or (metrics.get("correction_context") or {}).get(
                "failed_gate_metrics"
            ) or []
            points[sequence_no] = ResumePoint(run.attempt_no + 1, [str(m) for m in failed])
    return points


class SelfImprovementOrchestrator:
    """Drives queued batches through their loops."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        runner_factory: LoopRunnerFactory,
        batches: Optional[BatchStore] = None,
    ):
        self._session_maker = session_maker
        self.runner_factory = runner_factory
        self.batches = batches or BatchStore(session_maker)
        self._log = logger.bind(component="SelfImprovementOrchestrator")

    async def _is_cancelled(self, batch_id: uuid.UUID) -> bool:
        return await self.batches.current_status(batch_id) == BatchStatus.CANCELLED

    async def process_next_batch(self) -> Dict[str, Any]:
        """Claim and fully process one queued batch.

        Returns:
            ``{"status": "idle"}``, ``{"status": "processed", "batch_id", "batch_status", "summary"}``
            or ``{"status": "abandoned", ...}`` when stale recovery took the claim away
        """
        batch = await self.batches.claim_next()
        if batch is None:
            return {"status": "idle"}

        log = self._log.bind(batch_id=str(batch.id), loop_type=batch.loop_type.value)
        token = batch.claim_token
        summary = normalize_summary(batch)
        try:
            runner = self.runner_factory(batch.store_id)
            await runner.store.ensure_seeded()
            points = resume_points(await self.batches.list_runs(batch.id), batch.retry_limit)

            for sequence_no in range(1, batch.requested_count + 1):
                if not await self.batches.holds_claim(batch.id, token):
                    return await self._abandon(batch.id, summary)
                if await self._is_cancelled(batch.id):
                    return await self._finish(batch.id, token, BatchEvent.CANCEL, {**summary, "running_sequence": None})

                point = points.get(sequence_no, ResumePoint(1, []))
                if point is None:
                    continue

                summary = {**summary, "running_sequence": sequence_no}
                await self.batches.update_summary(batch.id, summary, claim_token=token)

                result = await self._process_sequence(runner, batch, sequence_no, point)
                if result is None:
                    if not await self.batches.holds_claim(batch.id, token):
                        return await self._abandon(batch.id, summary)
                    return await self._finish(batch.id, token, BatchEvent.CANCEL, {**summary, "running_sequence": None})

                summary = with_sequence_result(summary, result)
                await self.batches.update_summary(batch.id, summary, claim_token=token)

            event = BatchEvent.COMPLETE_WITH_FAILURES if summary["final_failed_count"] > 0 else BatchEvent.COMPLETE
            return await self._finish(batch.id, token, event, {**summary, "running_sequence": None})
        except Exception as e:
            if not await self.batches.holds_claim(batch.id, token):
                log.warning("batch_claim_lost", error=str(e), error_type=type(e).__name__)
                return await self._abandon(batch.id, summary)
            log.error("batch_processing_failed", error=str(e), error_type=type(e).__name__)
            failed_summary = {**summary, "running_sequence": None, "worker_failure": {"message": str(e)}}
            return await self._finish(batch.id, token, BatchEvent.FAIL, failed_summary, error_message=str(e))

    async def _finish(
        self,
        batch_id: uuid.UUID,
        claim_token: Optional[uuid.UUID],
        event: BatchEvent,
        summary: Dict[str, Any],
        error_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        status = await self.batches.finalize(
            batch_id, event, summary, error_message=error_message, claim_token=claim_token,
        )
        return {
            "status": "processed",
            "batch_id": str(batch_id),
            "batch_status": status.value,
            "summary": summary,
        }

    async def _abandon(self, batch_id: uuid.UUID, summary: Dict[str, Any]) -> Dict[str, Any]:
        # The batch belongs to whoever holds the current claim; leave it untouched
        status = await self.batches.current_status(batch_id)
        self._log.warning("batch_abandoned", batch_id=str(batch_id), batch_status=status.value if status else None)
        return {
            "status": "abandoned",
            "batch_id": str(batch_id),
            "batch_status": status.value if status else None,
            "summary": summary,
        }

    async def _process_sequence(
        self,
        runner: LoopRunner,
        batch: SelfImprovementBatch,
        sequence_no: int,
        point: ResumePoint,
    ) -> Optional[SequenceResult]:
        """Run attempts of one sequence until it passes or retries run out.

        Returns:
            The sequence's contribution, or None when the batch was cancelled
            or lost its claim between attempts
        """
        failed_metrics = list(point.failed_metrics)
        last_attempt = batch.retry_limit + 1
        outcome = SequenceResult(final_failed=True)

        for attempt_no in range(point.attempt_no, max(point.attempt_no, last_attempt) + 1):
            if attempt_no > point.attempt_no and (
                await self._is_cancelled(batch.id) or not await self.batches.holds_claim(batch.id, batch.claim_token)
            ):
                return None

            run_id = await self.batches.start_attempt(batch.id, sequence_no, attempt_no)
            try:
                result = await runner.run_attempt(batch, sequence_no, attempt_no, failed_metrics)
            except Exception as e:
                # Attempt failure; the batch continues
                outcome, failed_metrics = await self._record_error(
                    run_id, e, sequence_no, attempt_no, batch.retry_limit, failed_metrics
                )
                if attempt_no <= batch.retry_limit:
                    continue
                return outcome

            event = attempt_event(result.passed, attempt_no, batch.retry_limit)
            await self.batches.finish_attempt(
                run_id,
                event,
                pipeline_run_id=result.pipeline_run_id,
                harness_run_id=result.harness_run_id,
                metrics=result.to_metrics(),
            )
            outcome = SequenceResult.from_attempt(result, attempt_no)
            if result.passed or event != RunEvent.FAIL or attempt_no > batch.retry_limit:
                return outcome
            failed_metrics = list(dict.fromkeys([*failed_metrics, *result.failed_metrics]))
        return outcome

    async def _record_error(
        self,
        run_id: uuid.UUID,
        error: Exception,
        sequence_no: int,
        attempt_no: int,
        retry_limit: int,
        failed_metrics: List[str],
    ):
        correction = build_self_correction_context(error, {})
        event = attempt_event(False, attempt_no, retry_limit)
        self._log.warning(
            "loop_attempt_error",
            sequence_no=sequence_no,
            attempt_no=attempt_no,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self.batches.finish_attempt(
            run_id,
            event,
            metrics={
                "passed": False,
                "failed_metrics": list(failed_metrics),
                "correction_context": correction,
                "learning_result": {"auto_applied_updates": 0, "candidate_fixes": correction["candidate_fixes"]},
            },
            error_message=str(error) or type(error).__name__,
        )
        merged = list(dict.fromkeys([*failed_metrics, *correction["failed_gate_metrics"]]))
        return SequenceResult(final_failed=True, failed_metrics=merged), merged
