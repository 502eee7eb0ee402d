"""Queue task definitions for the self-improvement loop.

This module contains arq task functions for:
    - enqueue_batch_task: Queue a self-improvement batch
    - cancel_batch_task: Cancel a queued or running batch
    - process_next_batch_task: Claim and process one queued batch
    - recover_stale_work_task: Requeue batches interrupted by a crashed worker
    - expire_run_logs_task: Apply run-log retention
"""
from src.tasks.self_improvement_tasks import (
    cancel_batch_task,
    enqueue_batch_task,
    expire_run_logs_task,
    process_next_batch_task,
    recover_stale_work_task,
)

__all__ = [
    "cancel_batch_task",
    "enqueue_batch_task",
    "expire_run_logs_task",
    "process_next_batch_task",
    "recover_stale_work_task",
]
