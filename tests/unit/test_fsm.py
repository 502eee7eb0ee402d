"""Unit tests for batch/run state machines and operator phrases."""
from types import SimpleNamespace

import pytest

from src.db.models.self_improvement import BatchStatus, LoopType, RunStatus
from src.errors.exceptions import InvalidTransitionError, PhraseParseError
from src.services.self_improvement import (
    BatchEvent,
    PhraseAction,
    RunEvent,
    attempt_event,
    batch_transition,
    is_sequence_settled,
    latest_attempt_per_sequence,
    parse_phrase,
    run_transition,
    sequence_tallies,
)
from src.services.self_improvement.fsm import allowed_batch_sources, stale_recovery_status


def _run(sequence_no, attempt_no, status):
    return SimpleNamespace(sequence_no=sequence_no, attempt_no=attempt_no, status=status)


class TestBatchTransitions:

    @pytest.mark.parametrize("status,event,expected", [
        (BatchStatus.QUEUED, BatchEvent.CLAIM, BatchStatus.RUNNING),
        (BatchStatus.QUEUED, BatchEvent.CANCEL, BatchStatus.CANCELLED),
        (BatchStatus.RUNNING, BatchEvent.COMPLETE, BatchStatus.COMPLETED),
        (BatchStatus.RUNNING, BatchEvent.COMPLETE_WITH_FAILURES, BatchStatus.COMPLETED_WITH_FAILURES),
        (BatchStatus.RUNNING, BatchEvent.FAIL, BatchStatus.FAILED),
        (BatchStatus.RUNNING, BatchEvent.REQUEUE, BatchStatus.QUEUED),
    ])
    def test_allowed(self, status, event, expected):
        assert batch_transition(status, event) == expected

    @pytest.mark.parametrize("status", [
        BatchStatus.COMPLETED,
        BatchStatus.COMPLETED_WITH_FAILURES,
        BatchStatus.FAILED,
        BatchStatus.CANCELLED,
    ])
    def test_terminal_states_accept_nothing(self, status):
        for event in BatchEvent:
            with pytest.raises(InvalidTransitionError):
                batch_transition(status, event)

    def test_queued_cannot_complete(self):
        with pytest.raises(InvalidTransitionError, match="complete"):
            batch_transition(BatchStatus.QUEUED, BatchEvent.COMPLETE)

    def test_cancel_sources(self):
        assert set(allowed_batch_sources(BatchEvent.CANCEL)) == {BatchStatus.QUEUED, BatchStatus.RUNNING}


class TestRunTransitions:

    def test_start_then_finish(self):
        running = run_transition(RunStatus.QUEUED, RunEvent.START)
        assert running == RunStatus.RUNNING
        assert run_transition(running, RunEvent.RETRY_SUCCEED) == RunStatus.RETRIED_SUCCEEDED

    @pytest.mark.parametrize("status,event", [
        (RunStatus.QUEUED, RunEvent.SUCCEED),
        (RunStatus.RUNNING, RunEvent.START),
        (RunStatus.SUCCEEDED, RunEvent.FAIL),
        (RunStatus.RETRIED_FAILED, RunEvent.START),
    ])
    def test_rejected(self, status, event):
        with pytest.raises(InvalidTransitionError):
            run_transition(status, event)

    @pytest.mark.parametrize("passed,attempt_no,retry_limit,expected", [
        (True, 1, 1, RunEvent.SUCCEED),
        (True, 2, 1, RunEvent.RETRY_SUCCEED),
        (False, 1, 1, RunEvent.FAIL),
        (False, 1, 0, RunEvent.FAIL),
        (False, 2, 2, RunEvent.FAIL),
        (False, 2, 1, RunEvent.RETRY_FAIL),
    ])
    def test_attempt_event(self, passed, attempt_no, retry_limit, expected):
        assert attempt_event(passed, attempt_no, retry_limit) == expected

    def test_stale_recovery_status(self):
        assert stale_recovery_status(1, 1) == RunStatus.FAILED
        assert stale_recovery_status(2, 1) == RunStatus.RETRIED_FAILED


class TestSequenceProjection:

    def test_latest_attempt_wins(self):
        runs = [
            _run(2, 1, RunStatus.FAILED),
            _run(1, 1, RunStatus.SUCCEEDED),
            _run(2, 2, RunStatus.RETRIED_SUCCEEDED),
        ]
        latest = latest_attempt_per_sequence(runs)

        assert list(latest) == [1, 2]
        assert latest[2].attempt_no == 2

    def test_settled(self):
        assert is_sequence_settled(_run(1, 1, RunStatus.SUCCEEDED), 1) is True
        assert is_sequence_settled(_run(1, 2, RunStatus.RETRIED_FAILED), 1) is True
        assert is_sequence_settled(_run(1, 1, RunStatus.FAILED), 1) is False
        assert is_sequence_settled(_run(1, 1, RunStatus.FAILED), 0) is True
        assert is_sequence_settled(_run(1, 1, RunStatus.RUNNING), 1) is False

    def test_tallies_count_latest_attempt_only(self):
        runs = [
            _run(1, 1, RunStatus.SUCCEEDED),
            _run(2, 1, RunStatus.FAILED),
            _run(2, 2, RunStatus.RETRIED_SUCCEEDED),
            _run(3, 1, RunStatus.FAILED),
            _run(3, 2, RunStatus.RETRIED_FAILED),
            _run(4, 1, RunStatus.QUEUED),
        ]
        assert sequence_tallies(runs, retry_limit=1) == {
            "success_count": 1,
            "retried_success_count": 1,
            "final_failed_count": 1,
        }


class TestParsePhrase:

    def test_enqueue(self):
        command = parse_phrase("Run 5 self-improvement canary loops", max_loops=25)
        assert command.action == PhraseAction.ENQUEUE
        assert command.count == 5
        assert command.loop_type == LoopType.CANARY

    def test_single_loop_and_whitespace(self):
        command = parse_phrase("  run   1 self-improvement FULL loop ", max_loops=25)
        assert command.count == 1
        assert command.loop_type == LoopType.FULL

    def test_status_commands(self):
        assert parse_phrase("show self-improvement batches").action == PhraseAction.STATUS_ALL
        command = parse_phrase("show self-improvement batch 1b4e28ba-2fa1-11d2-883f-0016d3cca427")
        assert command.action == PhraseAction.STATUS_ONE
        assert command.batch_id == "1b4e28ba-2fa1-11d2-883f-0016d3cca427"

    def test_count_over_max(self):
        with pytest.raises(PhraseParseError, match="exceeds max allowed 25"):
            parse_phrase("run 26 self-improvement canary loops", max_loops=25)

    def test_zero_count(self):
        with pytest.raises(PhraseParseError, match="at least 1"):
            parse_phrase("run 0 self-improvement canary loops", max_loops=25)

    def test_ambiguous(self):
        with pytest.raises(PhraseParseError, match="Ambiguous"):
            parse_phrase("run some self-improvement loops", max_loops=25)

    @pytest.mark.parametrize("phrase", ["", "hello", "run 5 canary loops"])
    def test_unrecognized(self, phrase):
        with pytest.raises(PhraseParseError, match="Unrecognized"):
            parse_phrase(phrase, max_loops=25)
