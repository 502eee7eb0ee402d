"""Batch and run state machines.

Batch:
    queued -> running -> completed | completed_with_failures | failed | cancelled
    running -> queued (stale recovery requeue)
    queued -> cancelled

Run (one attempt of one logical loop):
    queued -> running -> succeeded | retried_succeeded | failed | retried_failed

``batch_transition``/``run_transition`` are total over (status, event):
every pair either maps to a next status or raises ``InvalidTransitionError``.
``latest_attempt_per_sequence`` is a pure projection over run rows.
"""
from enum import Enum
from typing import Dict, Iterable, Mapping, Protocol, Tuple, TypeVar

from src.db.models.self_improvement import BatchStatus, RunStatus
from src.errors.exceptions import InvalidTransitionError


class BatchEvent(str, Enum):
    CLAIM = "claim"
    COMPLETE = "complete"
    COMPLETE_WITH_FAILURES = "complete_with_failures"
    FAIL = "fail"
    CANCEL = "cancel"
    REQUEUE = "requeue"


class RunEvent(str, Enum):
    START = "start"
    SUCCEED = "succeed"
    FAIL = "fail"
    RETRY_SUCCEED = "retry_succeed"
    RETRY_FAIL = "retry_fail"


BATCH_TERMINAL = frozenset({
    BatchStatus.COMPLETED,
    BatchStatus.COMPLETED_WITH_FAILURES,
    BatchStatus.FAILED,
    BatchStatus.CANCELLED,
})

RUN_TERMINAL = frozenset({
    RunStatus.SUCCEEDED,
    RunStatus.RETRIED_SUCCEEDED,
    RunStatus.FAILED,
    RunStatus.RETRIED_FAILED,
})

RUN_SUCCESS = frozenset({RunStatus.SUCCEEDED, RunStatus.RETRIED_SUCCEEDED})

_BATCH_TRANSITIONS: Dict[Tuple[BatchStatus, BatchEvent], BatchStatus] = {
    (BatchStatus.QUEUED, BatchEvent.CLAIM): BatchStatus.RUNNING,
    (BatchStatus.QUEUED, BatchEvent.CANCEL): BatchStatus.CANCELLED,
    (BatchStatus.RUNNING, BatchEvent.COMPLETE): BatchStatus.COMPLETED,
    (BatchStatus.RUNNING, BatchEvent.COMPLETE_WITH_FAILURES): BatchStatus.COMPLETED_WITH_FAILURES,
    (BatchStatus.RUNNING, BatchEvent.FAIL): BatchStatus.FAILED,
    (BatchStatus.RUNNING, BatchEvent.CANCEL): BatchStatus.CANCELLED,
    (BatchStatus.RUNNING, BatchEvent.REQUEUE): BatchStatus.QUEUED,
}

_RUN_TRANSITIONS: Dict[Tuple[RunStatus, RunEvent], RunStatus] = {
    (RunStatus.QUEUED, RunEvent.START): RunStatus.RUNNING,
    (RunStatus.RUNNING, RunEvent.SUCCEED): RunStatus.SUCCEEDED,
    (RunStatus.RUNNING, RunEvent.RETRY_SUCCEED): RunStatus.RETRIED_SUCCEEDED,
    (RunStatus.RUNNING, RunEvent.FAIL): RunStatus.FAILED,
    (RunStatus.RUNNING, RunEvent.RETRY_FAIL): RunStatus.RETRIED_FAILED,
}


def batch_transition(status: BatchStatus, event: BatchEvent) -> BatchStatus:
    """Next batch status.

    Raises:
        InvalidTransitionError: ``event`` is not allowed in ``status``
    """
    try:
        return _BATCH_TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransitionError(f"Batch cannot '{event.value}' from status '{status.value}'") from None


def run_transition(status: RunStatus, event: RunEvent) -> RunStatus:
    """Next run status.

    Raises:
        InvalidTransitionError: ``event`` is not allowed in ``status``
    """
    try:
        return _RUN_TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransitionError(f"Run cannot '{event.value}' from status '{status.value}'") from None


def allowed_batch_sources(event: BatchEvent) -> Tuple[BatchStatus, ...]:
    """Statuses ``event`` may leave; used as the WHERE clause of conditional updates."""
    return tuple(status for (status, candidate) in _BATCH_TRANSITIONS if candidate == event)


def attempt_event(passed: bool, attempt_no: int, retry_limit: int) -> RunEvent:
    """Outcome event of one finished attempt.

    A failed attempt that still has retries left is plain ``fail``; the last
    allowed attempt of a retried sequence ends as ``retry_fail``.
    """
    if passed:
        return RunEvent.SUCCEED if attempt_no == 1 else RunEvent.RETRY_SUCCEED
    if attempt_no <= retry_limit or attempt_no == 1:
        return RunEvent.FAIL
    return RunEvent.RETRY_FAIL


def stale_recovery_status(attempt_no: int, retry_limit: int) -> RunStatus:
    return RunStatus.RETRIED_FAILED if attempt_no > retry_limit else RunStatus.FAILED


class AttemptLike(Protocol):
    sequence_no: int
    attempt_no: int
    status: RunStatus


A = TypeVar("A", bound=AttemptLike)


def latest_attempt_per_sequence(runs: Iterable[A]) -> Dict[int, A]:
    """Highest attempt_no per sequence_no."""
    latest: Dict[int, A] = {}
    for run in runs:
        current = latest.get(run.sequence_no)
        if current is None or run.attempt_no > current.attempt_no:
            latest[run.sequence_no] = run
    return dict(sorted(latest.items()))


def is_sequence_settled(run: AttemptLike, retry_limit: int) -> bool:
    """True once a sequence's latest attempt needs no further attempt."""
    if run.status in RUN_SUCCESS or run.status == RunStatus.RETRIED_FAILED:
        return True
    return run.status == RunStatus.FAILED and run.attempt_no > retry_limit


def sequence_tallies(runs: Iterable[AttemptLike], retry_limit: int) -> Mapping[str, int]:
    """Completion tallies counting only the latest attempt per sequence."""
    success = retried_success = final_failed = 0
    for run in latest_attempt_per_sequence(runs).values():
        if run.status == RunStatus.SUCCEEDED:
            success += 1
        elif run.status == RunStatus.RETRIED_SUCCEEDED:
            retried_success += 1
        elif is_sequence_settled(run, retry_limit):
            final_failed += 1
    return {
        "success_count": success,
        "retried_success_count": retried_success,
        "final_failed_count": final_failed,
    }
