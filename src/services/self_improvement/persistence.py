"""Self-improvement batch and run persistence.

All state changes are conditional updates keyed on the expected current
status, so concurrent workers and the stale sweep never double-claim a
batch or overwrite each other's terminal states.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence
import uuid
import structlog

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from src.config import AutoApplyPolicy, self_improve_settings, settings
from src.db.base import utcnow
from src.db.models.self_improvement import (
    BatchStatus,
    LoopType,
    RunStatus,
    SelfImprovementBatch,
    SelfImprovementRun,
)
from src.errors.exceptions import ConsistencyError, DatabaseError, ValidationError
from src.services.self_improvement.fsm import (
    BATCH_TERMINAL,
    BatchEvent,
    RunEvent,
    allowed_batch_sources,
    batch_transition,
    latest_attempt_per_sequence,
    run_transition,
    stale_recovery_status,
)

logger = structlog.get_logger(__name__)

STALE_RUN_MESSAGE = "stale_run_recovered_after_worker_interrupt"


def initial_summary(requested_count: int) -> Dict[str, Any]:
    return {
        "total_loops": requested_count,
        "completed_loops": 0,
        "failed_loops": 0,
        "running_sequence": None,
        "success_count": 0,
        "retried_success_count": 0,
        "final_failed_count": 0,
        "gate_pass_rate": 0.0,
        "auto_applied_updates_count": 0,
        "proposals_generated": 0,
        "proposals_applied": 0,
        "structural_applies": 0,
        "rollbacks_triggered": 0,
        "avg_harness_delta": 0.0,
    }


@dataclass
class StaleRecoveryResult:
    recovered_runs: int = 0
    requeued_batches: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"recovered_runs": self.recovered_runs, "requeued_batches": self.requeued_batches}


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


def run_view(run: SelfImprovementRun) -> Dict[str, Any]:
    return {
        "sequence_no": run.sequence_no,
        "attempt_no": run.attempt_no,
        "status": run.status.value,
        "retried": run.attempt_no > 1,
        "pipeline_run_id": str(run.pipeline_run_id) if run.pipeline_run_id else None,
        "harness_run_id": str(run.harness_run_id) if run.harness_run_id else None,
        "error_message": run.error_message,
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
    }


def batch_view(batch: SelfImprovementBatch, runs: Optional[Sequence[SelfImprovementRun]] = None) -> Dict[str, Any]:
    """Operator-facing status of one batch.

    Includes the latest attempt per sequence, the most recent failure reason
    and whether any sequence needed a retry.
    """
    view: Dict[str, Any] = {
        "id": str(batch.id),
        "store_id": batch.store_id,
        "loop_type": batch.loop_type.value,
        "status": batch.status.value,
        "requested_count": batch.requested_count,
        "retry_limit": batch.retry_limit,
        "max_structural_changes": batch.max_structural_changes,
        "auto_apply_policy": batch.auto_apply_policy,
        "summary": dict(batch.summary or {}),
        "error_message": batch.error_message,
        "created_at": _iso(batch.created_at),
        "started_at": _iso(batch.started_at),
        "finished_at": _iso(batch.finished_at),
    }
    if runs is None:
        return view

    latest = latest_attempt_per_sequence(runs)
    failures = [run for run in runs if run.error_message]
    failures.sort(key=lambda run: (run.finished_at or run.started_at, run.sequence_no, run.attempt_no))
    view["sequences"] = [run_view(run) for run in latest.values()]
    view["last_failure_reason"] = failures[-1].error_message if failures else None
    view["retried"] = any(run.attempt_no > 1 for run in runs)
    return view


class BatchStore:
    """Batch/run persistence for the orchestrator, worker and CLI."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        self._log = logger.bind(component="BatchStore")

    # =========================================================================
    # Batch lifecycle commands
    # =========================================================================

    async def enqueue(
        self,
        loop_type: LoopType,
        requested_count: int,
        *,
        retry_limit: Optional[int] = None,
        max_structural_changes: Optional[int] = None,
        auto_apply_policy: Optional[AutoApplyPolicy] = None,
        store_id: Optional[str] = None,
    ) -> SelfImprovementBatch:
        """Queue a batch and its first attempt per sequence.

        Raises:
            ValidationError: Count outside 1..max_loops, negative limits
        """
        max_loops = self_improve_settings.max_loops
        if requested_count <= 0:
            raise ValidationError("requested_count must be a positive integer")
        if requested_count > max_loops:
            raise ValidationError(f"requested_count ({requested_count}) exceeds max_loops ({max_loops})")
        retry_limit = self_improve_settings.retry_limit if retry_limit is None else retry_limit
        if max_structural_changes is None:
            max_structural_changes = self_improve_settings.max_structural_changes_per_loop
        if retry_limit < 0 or max_structural_changes < 0:
            raise ValidationError("retry_limit and max_structural_changes must be >= 0")
        policy = auto_apply_policy or self_improve_settings.auto_apply_policy

        batch = SelfImprovementBatch(
            store_id=store_id or settings.default_store_id,
            loop_type=loop_type,
            requested_count=requested_count,
            retry_limit=retry_limit,
            max_structural_changes=max_structural_changes,
            auto_apply_policy=AutoApplyPolicy(policy).value,
            status=BatchStatus.QUEUED,
            summary=initial_summary(requested_count),
            meta={},
        )
        try:
            async with self._session_maker() as session:
                session.add(batch)
                await session.flush()
                session.add_all([
                    SelfImprovementRun(
                        batch_id=batch.id,
                        sequence_no=sequence_no,
                        attempt_no=1,
                        status=RunStatus.QUEUED,
                    )
                    for sequence_no in range(1, requested_count + 1)
                ])
                await session.commit()
        except SQLAlchemyError as e:
            self._log.error("batch_enqueue_failed", error=str(e))
            raise DatabaseError(f"Failed to enqueue self-improvement batch: {e}") from e

        self._log.info(
            "batch_enqueued",
            batch_id=str(batch.id),
            loop_type=loop_type.value,
            requested_count=requested_count,
            retry_limit=retry_limit,
        )
        return batch

    async def cancel(self, batch_id: uuid.UUID) -> Optional[SelfImprovementBatch]:
        """Cancel a queued or running batch; None when it was in neither state."""
        async with self._session_maker() as session:
            result = await session.execute(
                update(SelfImprovementBatch)
                .where(SelfImprovementBatch.id == batch_id)
                .where(SelfImprovementBatch.status.in_(allowed_batch_sources(BatchEvent.CANCEL)))
                .values(status=BatchStatus.CANCELLED, finished_at=utcnow())
            )
            await session.commit()
            if result.rowcount != 1:
                self._log.info("batch_cancel_ignored", batch_id=str(batch_id))
                return None
            batch = await session.get(SelfImprovementBatch, batch_id)
        self._log.info("batch_cancelled", batch_id=str(batch_id))
        return batch

    async def claim_next(self) -> Optional[SelfImprovementBatch]:
        """Atomically move the oldest queued batch to running."""
        async with self._session_maker() as session:
            async with session.begin():
                candidate = await session.execute(
                    select(SelfImprovementBatch.id, SelfImprovementBatch.started_at)
                    .where(SelfImprovementBatch.status == BatchStatus.QUEUED)
                    .order_by(SelfImprovementBatch.created_at.asc(), SelfImprovementBatch.id.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                row = candidate.first()
                if row is None:
                    return None
                batch_id, started_at = row
                claimed = await session.execute(
                    update(SelfImprovementBatch)
                    .where(SelfImprovementBatch.id == batch_id)
                    .where(SelfImprovementBatch.status == BatchStatus.QUEUED)
                    .values(
                        status=batch_transition(BatchStatus.QUEUED, BatchEvent.CLAIM),
                        claim_token=uuid.uuid4(),
                        started_at=started_at or utcnow(),
                        finished_at=None,
                    )
                )
                if claimed.rowcount != 1:
                    # Another worker won the race
                    return None
            batch = await session.get(SelfImprovementBatch, batch_id, populate_existing=True)

        self._log.info("batch_claimed", batch_id=str(batch_id))
        return batch

    async def get(self, batch_id: uuid.UUID, with_runs: bool = False) -> Optional[SelfImprovementBatch]:
        async with self._session_maker() as session:
            options = [selectinload(SelfImprovementBatch.runs)] if with_runs else []
            return await session.get(SelfImprovementBatch, batch_id, options=options, populate_existing=True)

    async def status(self, batch_id: uuid.UUID) -> Optional[Dict[str, Any]]:
        batch = await self.get(batch_id, with_runs=True)
        if batch is None:
            return None
        return batch_view(batch, list(batch.runs))

    async def list_batches(self, limit: int = 20, include_finished: bool = True) -> List[Dict[str, Any]]:
        query = (
            select(SelfImprovementBatch)
            .order_by(SelfImprovementBatch.created_at.desc(), SelfImprovementBatch.id.desc())
            .limit(max(1, limit))
        )
        if not include_finished:
            query = query.where(SelfImprovementBatch.status.in_((BatchStatus.QUEUED, BatchStatus.RUNNING)))
        async with self._session_maker() as session:
            result = await session.execute(query)
            return [batch_view(batch) for batch in result.scalars()]

    async def list_runs(self, batch_id: uuid.UUID) -> List[SelfImprovementRun]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(SelfImprovementRun)
                .where(SelfImprovementRun.batch_id == batch_id)
                .order_by(SelfImprovementRun.sequence_no.asc(), SelfImprovementRun.attempt_no.asc())
            )
            return list(result.scalars())

    async def current_status(self, batch_id: uuid.UUID) -> Optional[BatchStatus]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(SelfImprovementBatch.status).where(SelfImprovementBatch.id == batch_id)
            )
            return result.scalar_one_or_none()

    async def holds_claim(self, batch_id: uuid.UUID, claim_token: Optional[uuid.UUID]) -> bool:
        """False once stale recovery requeued the batch or another worker re-claimed it."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(SelfImprovementBatch.status, SelfImprovementBatch.claim_token)
                .where(SelfImprovementBatch.id == batch_id)
            )
            row = result.first()
        if row is None:
            return False
        status, token = row
        return token == claim_token and status in (BatchStatus.RUNNING, BatchStatus.CANCELLED)

    async def update_summary(
        self,
        batch_id: uuid.UUID,
        summary: Dict[str, Any],
        claim_token: Optional[uuid.UUID] = None,
    ) -> None:
        query = update(SelfImprovementBatch).where(SelfImprovementBatch.id == batch_id)
        if claim_token is not None:
            query = query.where(SelfImprovementBatch.claim_token == claim_token)
        async with self._session_maker() as session:
            await session.execute(query.values(summary=dict(summary)))
            await session.commit()

    async def finalize(
        self,
        batch_id: uuid.UUID,
        event: BatchEvent,
        summary: Dict[str, Any],
        error_message: Optional[str] = None,
        claim_token: Optional[uuid.UUID] = None,
    ) -> BatchStatus:
        """Move a running batch to the terminal status ``event`` leads to.

        A batch cancelled meanwhile keeps its cancelled status; only the
        summary is refreshed. With ``claim_token`` nothing is written unless
        the batch still carries that token, so a worker whose claim was
        recovered as stale cannot finalize the batch under its new owner.

        Returns:
            The batch status after the call
        """
        target = batch_transition(BatchStatus.RUNNING, event)
        guard = [SelfImprovementBatch.id == batch_id]
        if claim_token is not None:
            guard.append(SelfImprovementBatch.claim_token == claim_token)

        async with self._session_maker() as session:
            result = await session.execute(
                update(SelfImprovementBatch)
                .where(*guard)
                .where(SelfImprovementBatch.status == BatchStatus.RUNNING)
                .values(status=target, summary=dict(summary), error_message=error_message, finished_at=utcnow())
            )
            if result.rowcount != 1:
                await session.execute(
                    update(SelfImprovementBatch)
                    .where(*guard)
                    .where(SelfImprovementBatch.status == BatchStatus.CANCELLED)
                    .values(summary=dict(summary))
                )
            await session.commit()
            status = (await session.execute(
                select(SelfImprovementBatch.status).where(SelfImprovementBatch.id == batch_id)
            )).scalar_one()

        if result.rowcount != 1 and status != BatchStatus.CANCELLED:
            self._log.warning("batch_finalize_skipped", batch_id=str(batch_id), status=status.value, requested=target.value)
        else:
            self._log.info("batch_finalized", batch_id=str(batch_id), status=status.value, requested=target.value)
        return status

    # =========================================================================
    # Run attempts
    # =========================================================================

    async def start_attempt(self, batch_id: uuid.UUID, sequence_no: int, attempt_no: int) -> uuid.UUID:
        """Mark an attempt running, creating its row when it was not pre-queued.

        Raises:
            ConsistencyError: Another attempt of the sequence is already running
        """
        try:
            async with self._session_maker() as session:
                existing = (await session.execute(
                    select(SelfImprovementRun)
                    .where(SelfImprovementRun.batch_id == batch_id)
                    .where(SelfImprovementRun.sequence_no == sequence_no)
                    .where(SelfImprovementRun.attempt_no == attempt_no)
                )).scalar_one_or_none()

                if existing is None:
                    run = SelfImprovementRun(
                        batch_id=batch_id,
                        sequence_no=sequence_no,
                        attempt_no=attempt_no,
                        status=RunStatus.RUNNING,
                        started_at=utcnow(),
                    )
                    session.add(run)
                    await session.commit()
                    return run.id

                result = await session.execute(
                    update(SelfImprovementRun)
                    .where(SelfImprovementRun.id == existing.id)
                    .where(SelfImprovementRun.status == RunStatus.QUEUED)
                    .values(status=run_transition(RunStatus.QUEUED, RunEvent.START), started_at=utcnow())
                )
                if result.rowcount != 1:
                    raise ConsistencyError(
                        f"Attempt {attempt_no} of sequence {sequence_no} in batch {batch_id} is not queued"
                    )
                await session.commit()
                return existing.id
        except IntegrityError as e:
            raise ConsistencyError(
                f"Sequence {sequence_no} of batch {batch_id} already has a running attempt"
            ) from e

    async def finish_attempt(
        self,
        run_id: uuid.UUID,
        event: RunEvent,
        *,
        pipeline_run_id: Optional[uuid.UUID] = None,
        harness_run_id: Optional[uuid.UUID] = None,
        metrics: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> RunStatus:
        """Close a running attempt.

        Raises:
            ConsistencyError: The attempt is no longer running (e.g. recovered as stale)
        """
        target = run_transition(RunStatus.RUNNING, event)
        async with self._session_maker() as session:
            result = await session.execute(
                update(SelfImprovementRun)
                .where(SelfImprovementRun.id == run_id)
                .where(SelfImprovementRun.status == RunStatus.RUNNING)
                .values(
                    status=target,
                    pipeline_run_id=pipeline_run_id,
                    harness_run_id=harness_run_id,
                    metrics=dict(metrics or {}),
                    error_message=error_message[:2000] if error_message else None,
                    finished_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                raise ConsistencyError(f"Self-improvement run {run_id} is no longer running")
            await session.commit()
        return target

    # =========================================================================
    # Stale recovery
    # =========================================================================

    async def recover_stale(self, timeout_minutes: Optional[int] = None) -> StaleRecoveryResult:
        """Fail runs stuck in running past the timeout and requeue their batches.

        Batches running past the timeout with no running attempt are
        requeued as well.
        """
        minutes = timeout_minutes or self_improve_settings.stale_run_timeout_minutes
        now = utcnow()
        cutoff = now - timedelta(minutes=minutes)
        outcome = StaleRecoveryResult()

        async with self._session_maker() as session:
            async with session.begin():
                stale = await session.execute(
                    select(SelfImprovementRun, SelfImprovementBatch.retry_limit)
                    .join(SelfImprovementBatch, SelfImprovementBatch.id == SelfImprovementRun.batch_id)
                    .where(SelfImprovementBatch.status == BatchStatus.RUNNING)
                    .where(SelfImprovementRun.status == RunStatus.RUNNING)
                    .where(SelfImprovementRun.started_at <= cutoff)
                    .with_for_update()
                )
                recovered_batches = set()
                for run, retry_limit in stale.all():
                    result = await session.execute(
                        update(SelfImprovementRun)
                        .where(SelfImprovementRun.id == run.id)
                        .where(SelfImprovementRun.status == RunStatus.RUNNING)
                        .values(
                            status=stale_recovery_status(run.attempt_no, retry_limit),
                            error_message=STALE_RUN_MESSAGE,
                            metrics={
                                **(run.metrics or {}),
                                "stale_recovery": {
                                    "recovered_at": now.isoformat(),
                                    "stale_timeout_minutes": minutes,
                                },
                            },
                            finished_at=now,
                        )
                    )
                    if result.rowcount == 1:
                        outcome.recovered_runs += 1
                        recovered_batches.add(run.batch_id)

                no_running_attempt = ~exists().where(and_(
                    SelfImprovementRun.batch_id == SelfImprovementBatch.id,
                    SelfImprovementRun.status == RunStatus.RUNNING,
                ))
                idle_filter = and_(SelfImprovementBatch.updated_at <= cutoff, no_running_attempt)
                id_filter = SelfImprovementBatch.id.in_(sorted(recovered_batches, key=str)) if recovered_batches else None
                batches = await session.execute(
                    select(SelfImprovementBatch)
                    .where(SelfImprovementBatch.status == BatchStatus.RUNNING)
                    .where(or_(id_filter, idle_filter) if id_filter is not None else idle_filter)
                    .with_for_update()
                )
                for batch in batches.scalars().all():
                    summary = {
                        **(batch.summary or {}),
                        "running_sequence": None,
                        "stale_recovery": {"recovered_at": now.isoformat(), "stale_timeout_minutes": minutes},
                    }
                    result = await session.execute(
                        update(SelfImprovementBatch)
                        .where(SelfImprovementBatch.id == batch.id)
                        .where(SelfImprovementBatch.status == BatchStatus.RUNNING)
                        .values(
                            status=batch_transition(BatchStatus.RUNNING, BatchEvent.REQUEUE),
                            finished_at=None,
                            summary=summary,
                        )
                    )
                    outcome.requeued_batches += result.rowcount or 0

        if outcome.recovered_runs or outcome.requeued_batches:
            self._log.warning("stale_work_recovered", timeout_minutes=minutes, **outcome.to_dict())
        return outcome


def is_terminal(status: BatchStatus) -> bool:
    return status in BATCH_TERMINAL
