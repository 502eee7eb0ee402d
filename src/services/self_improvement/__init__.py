"""Self-improvement batches: state machines, persistence, loop and orchestrator."""
from src.services.self_improvement.fsm import (
    BatchEvent,
    RunEvent,
    attempt_event,
    batch_transition,
    is_sequence_settled,
    latest_attempt_per_sequence,
    run_transition,
    sequence_tallies,
)
from src.services.self_improvement.persistence import BatchStore, StaleRecoveryResult, batch_view
from src.services.self_improvement.loop import LoopAttemptResult, LoopRunner, default_runner_factory
from src.services.self_improvement.orchestrator import SelfImprovementOrchestrator
from src.services.self_improvement.phrase import PhraseAction, PhraseCommand, parse_phrase

__all__ = [
    "BatchEvent",
    "RunEvent",
    "attempt_event",
    "batch_transition",
    "is_sequence_settled",
    "latest_attempt_per_sequence",
    "run_transition",
    "sequence_tallies",
    "BatchStore",
    "StaleRecoveryResult",
    "batch_view",
    "LoopAttemptResult",
    "LoopRunner",
    "default_runner_factory",
    "SelfImprovementOrchestrator",
    "PhraseAction",
    "PhraseCommand",
    "parse_phrase",
]
