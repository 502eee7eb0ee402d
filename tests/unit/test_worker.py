"""Unit tests for the arq task functions and worker entry points."""
from unittest.mock import AsyncMock, MagicMock, patch
import uuid

import pytest

from src.db.models.self_improvement import BatchStatus, LoopType
from src.services.self_improvement import BatchStore
from src.tasks.self_improvement_tasks import (
    cancel_batch_task,
    enqueue_batch_task,
    expire_run_logs_task,
    process_next_batch_task,
    recover_stale_work_task,
)
from src.worker import (
    WorkerSettings,
    monitor_queue_depth,
    on_job_end,
    poll_seconds,
    run_polling_worker,
)


class TestProcessNextBatchTask:

    @pytest.mark.asyncio
    async def test_returns_orchestrator_result(self):
        orchestrator = MagicMock()
        orchestrator.process_next_batch = AsyncMock(return_value={
            "status": "processed", "batch_id": "b-1", "batch_status": "completed", "summary": {},
        })

        result = await process_next_batch_task({"orchestrator": orchestrator})

        assert result["batch_status"] == "completed"

    @pytest.mark.asyncio
    async def test_idle(self):
        orchestrator = MagicMock()
        orchestrator.process_next_batch = AsyncMock(return_value={"status": "idle"})
        assert await process_next_batch_task({"orchestrator": orchestrator}) == {"status": "idle"}

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self):
        orchestrator = MagicMock()
        orchestrator.process_next_batch = AsyncMock(side_effect=RuntimeError("db unreachable"))

        result = await process_next_batch_task({"orchestrator": orchestrator, "job_id": "j-1"})

        assert result == {"status": "failed", "error": "db unreachable"}


class TestBatchTasks:

    @pytest.mark.asyncio
    async def test_enqueue_and_cancel(self, session_maker):
        ctx = {"session_maker": session_maker}

        queued = await enqueue_batch_task(ctx, "canary", 3, retry_limit=0, auto_apply_policy="never")
        assert queued["status"] == "success"

        batch = await BatchStore(session_maker).get(uuid.UUID(queued["batch_id"]))
        assert batch.loop_type == LoopType.CANARY
        assert batch.retry_limit == 0
        assert batch.auto_apply_policy == "never"

        cancelled = await cancel_batch_task(ctx, queued["batch_id"])
        assert cancelled == {"status": "success", "batch_id": queued["batch_id"], "batch_status": "cancelled"}

        again = await cancel_batch_task(ctx, queued["batch_id"])
        assert again["status"] == "failed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("loop_type,count", [("weekly", 1), ("canary", 0), ("full", 1000)])
    async def test_enqueue_rejections(self, session_maker, loop_type, count):
        result = await enqueue_batch_task({"session_maker": session_maker}, loop_type, count)
        assert result["status"] == "failed"

    @pytest.mark.asyncio
    async def test_cancel_rejects_malformed_id(self, session_maker):
        result = await cancel_batch_task({"session_maker": session_maker}, "not-a-uuid")
        assert result["status"] == "failed"

    @pytest.mark.asyncio
    async def test_maintenance_tasks(self, session_maker):
        ctx = {"session_maker": session_maker}

        assert await recover_stale_work_task(ctx, timeout_minutes=30) == {
            "status": "success", "recovered_runs": 0, "requeued_batches": 0,
        }
        assert await expire_run_logs_task(ctx, retention_hours=1) == {"status": "success", "deleted": 0}


class TestWorkerSettings:

    def test_registered_functions(self):
        names = {function.__name__ for function in WorkerSettings.functions}
        assert names == {"enqueue_batch_task", "cancel_batch_task", "process_next_batch_task"}
        assert WorkerSettings.max_tries == 1
        assert len(WorkerSettings.cron_jobs) == 4

    def test_poll_seconds(self):
        with patch("src.worker.self_improve_settings") as settings:
            settings.worker_poll_ms = 15000
            assert poll_seconds() == {0, 15, 30, 45}
            settings.worker_poll_ms = 100
            assert poll_seconds() == set(range(60))

    @pytest.mark.asyncio
    async def test_monitor_queue_depth(self):
        redis = AsyncMock()
        redis.zcard.return_value = 4
        await monitor_queue_depth({"redis": redis})
        redis.zcard.assert_awaited_once()

        # Missing redis is logged, not raised
        await monitor_queue_depth({})

    @pytest.mark.asyncio
    async def test_on_job_end_tolerates_missing_result(self):
        await on_job_end({"job_result": ValueError("boom"), "job_id": "j-1"})
        await on_job_end({})


class TestPollingWorker:

    @pytest.mark.asyncio
    async def test_once_processes_one_batch(self, session_maker):
        await BatchStore(session_maker).enqueue(LoopType.CANARY, 1)
        runner = MagicMock()
        runner.store.ensure_seeded = AsyncMock()
        runner.run_attempt = AsyncMock(side_effect=RuntimeError("no catalog"))

        with patch("src.worker.get_session_maker", return_value=session_maker), \
                patch("src.worker.default_runner_factory", return_value=lambda store_id: runner):
            result = await run_polling_worker(once=True)

        assert result["status"] == "processed"
        assert result["batch_status"] == BatchStatus.COMPLETED_WITH_FAILURES.value

    @pytest.mark.asyncio
    async def test_once_idle(self, session_maker):
        with patch("src.worker.get_session_maker", return_value=session_maker), \
                patch("src.worker.default_runner_factory", return_value=MagicMock()):
            assert await run_polling_worker(once=True) == {"status": "idle"}
