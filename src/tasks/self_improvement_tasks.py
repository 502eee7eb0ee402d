"""
Self-Improvement Tasks

arq task functions for the self-improvement loop:
    - process_next_batch_task: Claim and process one queued batch
    - recover_stale_work_task: Requeue batches whose runs stopped heartbeating
    - expire_run_logs_task: Apply run-log retention
    - enqueue_batch_task: Queue a batch from an API caller

Each task returns a status dict and never raises, so a failure is
reported in the job result instead of being retried by arq.
"""

from typing import Any, Dict, Optional
import uuid
import structlog

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import AutoApplyPolicy, settings
from src.db.base import get_session_maker
from src.db.models.self_improvement import LoopType
from src.errors.exceptions import TaxonomyLoopError
from src.services.run_logger import expire_run_logs
from src.services.self_improvement import (
    BatchStore,
    SelfImprovementOrchestrator,
    default_runner_factory,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Context helpers
# =============================================================================


def _session_maker(ctx: Dict[str, Any]) -> async_sessionmaker[AsyncSession]:
    return ctx.get("session_maker") or get_session_maker()


def _orchestrator(ctx: Dict[str, Any]) -> SelfImprovementOrchestrator:
    orchestrator = ctx.get("orchestrator")
    if orchestrator is None:
        session_maker = _session_maker(ctx)
        orchestrator = SelfImprovementOrchestrator(session_maker, default_runner_factory(session_maker))
        ctx["orchestrator"] = orchestrator
    return orchestrator


# =============================================================================
# Tasks
# =============================================================================


async def process_next_batch_task(ctx: Dict[str, Any], **kwargs) -> Dict[str, Any]:
    """
    Process at most one queued self-improvement batch.

    Returns:
        Orchestrator result (``idle`` or ``processed``) or a failed status dict
    """
    log = logger.bind(task="process_next_batch", job_id=ctx.get("job_id"))
    try:
        result = await _orchestrator(ctx).process_next_batch()
    except Exception as e:
        log.error("process_next_batch_failed", error=str(e), error_type=type(e).__name__)
        return {"status": "failed", "error": str(e)}

    if result["status"] != "idle":
        log.info("batch_processed", batch_id=result["batch_id"], batch_status=result["batch_status"])
    return result


async def recover_stale_work_task(
    ctx: Dict[str, Any],
    timeout_minutes: Optional[int] = None,
    **kwargs,
) -> Dict[str, Any]:
    """
    Sweep runs stuck in ``running`` past the stale timeout.

    Runs independently of batch processing so a crashed worker's batch is
    requeued even while no worker is processing.
    """
    log = logger.bind(task="recover_stale_work")
    try:
        outcome = await BatchStore(_session_maker(ctx)).recover_stale(timeout_minutes)
    except Exception as e:
        log.error("stale_recovery_failed", error=str(e))
        return {"status": "failed", "error": str(e)}
    return {"status": "success", **outcome.to_dict()}


async def expire_run_logs_task(
    ctx: Dict[str, Any],
    retention_hours: Optional[int] = None,
    **kwargs,
) -> Dict[str, Any]:
    """Delete run-log rows older than the retention window."""
    try:
        deleted = await expire_run_logs(_session_maker(ctx), retention_hours)
    except Exception as e:
        logger.error("run_log_expiry_failed", error=str(e))
        return {"status": "failed", "error": str(e)}
    return {"status": "success", "deleted": deleted}


async def enqueue_batch_task(
    ctx: Dict[str, Any],
    loop_type: str,
    requested_count: int,
    retry_limit: Optional[int] = None,
    max_structural_changes: Optional[int] = None,
    auto_apply_policy: Optional[str] = None,
    store_id: Optional[str] = None,
    **kwargs,
) -> Dict[str, Any]:
    """
    Queue a batch on behalf of a caller that only talks to Redis.

    Returns:
        ``{"status": "success", "batch_id": ...}`` or a failed status dict
    """
    log = logger.bind(task="enqueue_batch", loop_type=loop_type, requested_count=requested_count)
    try:
        batch = await BatchStore(_session_maker(ctx)).enqueue(
            LoopType(loop_type),
            requested_count,
            retry_limit=retry_limit,
            max_structural_changes=max_structural_changes,
            auto_apply_policy=AutoApplyPolicy(auto_apply_policy) if auto_apply_policy else None,
            store_id=store_id or settings.default_store_id,
        )
    except (TaxonomyLoopError, ValueError) as e:
        log.warning("enqueue_batch_rejected", error=str(e))
        return {"status": "failed", "error": str(e)}
    return {"status": "success", "batch_id": str(batch.id)}


async def cancel_batch_task(ctx: Dict[str, Any], batch_id: str, **kwargs) -> Dict[str, Any]:
    try:
        batch = await BatchStore(_session_maker(ctx)).cancel(uuid.UUID(batch_id))
    except (TaxonomyLoopError, ValueError) as e:
        return {"status": "failed", "error": str(e)}
    if batch is None:
        return {"status": "failed", "error": f"Batch {batch_id} is not queued or running"}
    return {"status": "success", "batch_id": batch_id, "batch_status": batch.status.value}
