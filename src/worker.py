"""Worker entry points for the self-improvement loop.

Two ways to run a worker, both safe as multiple replicas since every claim
is a conditional update in the database:

    - arq: ``python -m arq src.worker.WorkerSettings`` polls via cron jobs
      and also accepts enqueue/cancel jobs pushed to Redis
    - plain asyncio: ``python -m src.worker [--once]`` polls the database
      directly, with the stale sweep running as its own task

Each poll processes at most one batch.
"""
import argparse
import asyncio
from typing import Any, Dict, Optional
import structlog

from arq import cron
from arq.connections import ArqRedis, RedisSettings

from src.config import configure_logging, self_improve_settings, settings
from src.db.base import dispose_engine, get_session_maker
from src.services.self_improvement import BatchStore, SelfImprovementOrchestrator, default_runner_factory
from src.tasks.self_improvement_tasks import (
    cancel_batch_task,
    enqueue_batch_task,
    expire_run_logs_task,
    process_next_batch_task,
    recover_stale_work_task,
)

configure_logging(settings.log_level)
logger = structlog.get_logger(__name__)

STALE_SWEEP_INTERVAL_SECONDS = 60


def poll_seconds() -> set:
    """Cron seconds matching the configured poll interval (at least 1s apart)."""
    step = max(1, round(self_improve_settings.worker_poll_ms / 1000))
    return set(range(0, 60, step))


async def monitor_queue_depth(ctx: Dict[str, Any]) -> None:
    """Log the arq queue depth."""
    try:
        redis: Optional[ArqRedis] = ctx.get("redis")
        if not redis:
            logger.warning("monitor_queue_depth_no_redis")
            return
        depth = await redis.zcard(settings.queue_name)
        logger.info("queue_depth_monitor", queue_name=settings.queue_name, queue_depth=depth)
    except Exception as e:
        logger.error("monitor_queue_depth_error", error=str(e))


async def on_startup(ctx: Dict[str, Any]) -> None:
    session_maker = get_session_maker()
    ctx["session_maker"] = session_maker
    ctx["orchestrator"] = SelfImprovementOrchestrator(session_maker, default_runner_factory(session_maker))
    logger.info("worker_started", queue_name=settings.queue_name)


async def on_shutdown(ctx: Dict[str, Any]) -> None:
    await dispose_engine()
    logger.info("worker_stopped")


async def on_job_end(ctx: Dict[str, Any]) -> None:
    """Log jobs that ended with an exception."""
    job_result = ctx.get("job_result")
    if isinstance(job_result, Exception):
        logger.warning(
            "job_failed",
            job_id=ctx.get("job_id", "unknown"),
            job_try=ctx.get("job_try", 1),
            error=str(job_result),
        )


class WorkerSettings:
    """arq worker configuration settings.

    This class is imported by arq CLI: `python -m arq src.worker.WorkerSettings`

    Registered Tasks:
        - enqueue_batch_task: Queue a self-improvement batch
        - cancel_batch_task: Cancel a queued or running batch
        - process_next_batch_task: Process one queued batch

    Cron Jobs:
        - process_next_batch_task: Every poll interval
        - recover_stale_work_task: Every minute
        - expire_run_logs_task: Hourly
        - monitor_queue_depth: Every 5 minutes
    """

    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.queue_name
    max_jobs = settings.max_workers
    job_timeout = settings.job_timeout
    keep_result = 3600
    max_tries = 1  # Tasks report failures in their result

    functions = [
        enqueue_batch_task,
        cancel_batch_task,
        process_next_batch_task,
    ]

    on_startup = on_startup
    on_shutdown = on_shutdown
    on_job_end = on_job_end

    cron_jobs = [
        cron(process_next_batch_task, second=poll_seconds(), unique=True),
        cron(recover_stale_work_task, second=30, unique=True),
        cron(expire_run_logs_task, minute=15, second=0, unique=True),
        cron(monitor_queue_depth, minute=set(range(0, 60, 5)), second=0),
    ]


# =============================================================================
# Plain asyncio polling worker
# =============================================================================


async def _stale_sweep_loop(store: BatchStore, stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            await store.recover_stale()
        except Exception as e:
            logger.error("stale_recovery_failed", error=str(e))
        try:
            await asyncio.wait_for(stop.wait(), timeout=STALE_SWEEP_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            pass


async def run_polling_worker(once: bool = False, stop: Optional[asyncio.Event] = None) -> Dict[str, Any]:
    """Poll for queued batches until ``stop`` is set.

    Args:
        once: Process at most one batch (after one stale sweep) and return
        stop: Event ending the loop; a fresh one is created when omitted

    Returns:
        Result of the last poll
    """
    session_maker = get_session_maker()
    store = BatchStore(session_maker)
    orchestrator = SelfImprovementOrchestrator(session_maker, default_runner_factory(session_maker), store)
    stop = stop or asyncio.Event()
    poll_interval = self_improve_settings.worker_poll_ms / 1000

    if once:
        await store.recover_stale()
        return await orchestrator.process_next_batch()

    logger.info("polling_worker_started", poll_interval_seconds=poll_interval)
    sweeper = asyncio.create_task(_stale_sweep_loop(store, stop))
    result: Dict[str, Any] = {"status": "idle"}
    try:
        while not stop.is_set():
            try:
                result = await orchestrator.process_next_batch()
            except Exception as e:
                logger.error("worker_poll_failed", error=str(e))
                result = {"status": "failed", "error": str(e)}
            if result["status"] != "processed":
                try:
                    await asyncio.wait_for(stop.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
    finally:
        stop.set()
        await sweeper
        logger.info("polling_worker_stopped")
    return result


async def _main(once: bool) -> None:
    try:
        result = await run_polling_worker(once=once)
        logger.info("worker_exit", **result)
    finally:
        await dispose_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Self-improvement polling worker")
    parser.add_argument("--once", action="store_true", help="Process at most one batch and exit")
    args = parser.parse_args()
    asyncio.run(_main(args.once))


if __name__ == "__main__":
    main()
