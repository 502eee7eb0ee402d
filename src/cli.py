"""Command line entry point.

Usage:
    taxonomy-loop init-db
    taxonomy-loop run --input data/catalog.csv
    taxonomy-loop enqueue --loop-type canary --count 3
    taxonomy-loop status [--batch-id ID]
    taxonomy-loop phrase "run 3 self-improvement canary loops"
    taxonomy-loop worker [--once]

Every command prints one JSON document to stdout and exits non-zero on
error.
"""
import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional
import uuid
import structlog

from src.config import AutoApplyPolicy, configure_logging, settings
from src.db.base import dispose_engine, get_session_maker, init_models
from src.db.models.learning import HarnessRun
from src.db.models.pipeline_run import RunKind
from src.db.models.self_improvement import LoopType
from src.errors.exceptions import TaxonomyLoopError, ValidationError
from src.services.canary import build_canary_subset
from src.services.catalog import normalize_catalog, read_catalog
from src.services.learning import (
    ApplyRollbackManager,
    GenerationOptions,
    HarnessEvaluator,
    ProposalGenerator,
    QAFeedbackImporter,
)
from src.services.llm import get_completer, get_embedder
from src.services.pipeline import PipelineRunner, get_run
from src.services.quality.aggregator import evaluate_quality_gate
from src.services.self_improvement import BatchStore, PhraseAction, parse_phrase
from src.taxonomy.store import TaxonomyStore
from src.worker import run_polling_worker

logger = structlog.get_logger(__name__)


def _uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not a valid id") from None


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False))


async def _store(store_id: Optional[str]) -> TaxonomyStore:
    store = TaxonomyStore(get_session_maker(), store_id or settings.default_store_id)
    await store.ensure_seeded()
    return store


# =============================================================================
# Commands
# =============================================================================


async def cmd_init_db(args: argparse.Namespace) -> Dict[str, Any]:
    await init_models()
    store = await _store(args.store_id)
    snapshot = await store.current()
    return {"status": "ok", "store_id": store.store_id, "taxonomy_version": snapshot.version_id}


async def cmd_run(args: argparse.Namespace) -> Dict[str, Any]:
    store = await _store(args.store_id)
    rows = await asyncio.to_thread(read_catalog, args.input)
    runner = PipelineRunner(get_session_maker(), store, get_embedder(), completer=get_completer())
    result = await runner.run(normalize_catalog(rows), run_kind=RunKind(args.kind), input_path=args.input)
    return {
        "run_id": str(result.run_id),
        "taxonomy_version": result.taxonomy_version,
        "hotlist_path": result.hotlist_path,
        "quality_gate": evaluate_quality_gate(result.stats).to_dict(),
        "stats": result.stats,
    }


async def cmd_enqueue(args: argparse.Namespace) -> Dict[str, Any]:
    batch = await BatchStore(get_session_maker()).enqueue(
        LoopType(args.loop_type),
        args.count,
        retry_limit=args.retry_limit,
        max_structural_changes=args.max_structural_changes,
        auto_apply_policy=AutoApplyPolicy(args.auto_apply_policy) if args.auto_apply_policy else None,
        store_id=args.store_id,
    )
    return {"status": "queued", "batch_id": str(batch.id), "requested_count": batch.requested_count}


async def cmd_cancel(args: argparse.Namespace) -> Dict[str, Any]:
    batch = await BatchStore(get_session_maker()).cancel(args.batch_id)
    if batch is None:
        raise ValidationError(f"Batch {args.batch_id} is not queued or running")
    return {"status": batch.status.value, "batch_id": str(batch.id)}


async def cmd_status(args: argparse.Namespace) -> Any:
    batches = BatchStore(get_session_maker())
    if args.batch_id is None:
        return await batches.list_batches(limit=args.limit)
    view = await batches.status(args.batch_id)
    if view is None:
        raise ValidationError(f"Batch {args.batch_id} not found")
    return view


async def cmd_phrase(args: argparse.Namespace) -> Any:
    command = parse_phrase(args.text)
    batches = BatchStore(get_session_maker())
    if command.action == PhraseAction.STATUS_ALL:
        return await batches.list_batches()
    if command.action == PhraseAction.STATUS_ONE:
        view = await batches.status(_uuid(command.batch_id))
        if view is None:
            raise ValidationError(f"Batch {command.batch_id} not found")
        return view
    batch = await batches.enqueue(command.loop_type, command.count, store_id=args.store_id)
    return {"status": "queued", "batch_id": str(batch.id), "requested_count": batch.requested_count}


async def cmd_worker(args: argparse.Namespace) -> Dict[str, Any]:
    return await run_polling_worker(once=args.once)


async def cmd_harness_eval(args: argparse.Namespace) -> Dict[str, Any]:
    evaluator = HarnessEvaluator(get_session_maker(), args.store_id or settings.default_store_id)
    result = await evaluator.evaluate(
        args.candidate_run_id,
        baseline_run_id=args.baseline_run_id,
        benchmark_snapshot_id=args.benchmark_snapshot_id,
    )
    return result.model_dump(mode="json")


async def cmd_rollback(args: argparse.Namespace) -> Dict[str, Any]:
    store = await _store(args.store_id)
    record = await ApplyRollbackManager(get_session_maker(), store).rollback(args.target, reason=args.reason)
    return record.to_dict()


async def cmd_canary_build(args: argparse.Namespace) -> Dict[str, Any]:
    selection = await asyncio.to_thread(
        build_canary_subset,
        args.input,
        store_id=args.store_id,
        sample_size=args.sample_size,
        fixed_ratio=args.fixed_ratio,
        seed=args.seed,
        subset_path=args.output,
    )
    return selection.to_dict()


async def cmd_learn_propose(args: argparse.Namespace) -> List[Dict[str, Any]]:
    session_maker = get_session_maker()
    store = await _store(args.store_id)
    failed_metrics: List[str] = []
    alerts: List[Dict[str, Any]] = []
    if args.run_id is not None:
        async with session_maker() as session:
            run = await get_run(session, args.run_id)
        if run is None:
            raise ValidationError(f"Run {args.run_id} not found")
        stats = dict(run.stats or {})
        failed_metrics = evaluate_quality_gate(stats).failed_metrics
        alerts = [a for a in stats.get("top_confusion_alerts") or [] if isinstance(a, dict)]

    proposals = await ProposalGenerator(session_maker, store).generate(
        run_id=args.run_id,
        failed_metrics=failed_metrics,
        alerts=alerts,
        options=GenerationOptions(max_proposals=args.max_proposals),
    )
    return [
        {
            "id": str(p.id),
            "kind": p.kind.value,
            "confidence_score": p.confidence_score,
            "expected_impact_score": p.expected_impact_score,
            "payload": p.payload,
        }
        for p in proposals
    ]


async def cmd_learn_apply(args: argparse.Namespace) -> Dict[str, Any]:
    session_maker = get_session_maker()
    store = await _store(args.store_id)
    async with session_maker() as session:
        harness = await session.get(HarnessRun, args.harness_run_id)
    if harness is None or harness.store_id != store.store_id:
        raise ValidationError(f"Harness run {args.harness_run_id} not found")
    result = await ApplyRollbackManager(session_maker, store).apply_learning_proposals(
        harness,
        batch_id=args.batch_id,
        run_id=args.run_id,
        max_structural_changes=args.max_structural_changes,
    )
    return result.to_dict()


async def cmd_qa_import(args: argparse.Namespace) -> Dict[str, Any]:
    store = await _store(args.store_id)
    result = await QAFeedbackImporter(get_session_maker(), store).import_file(args.run_id, args.input)
    return result.to_dict()


# =============================================================================
# Parser
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taxonomy-loop", description="Taxonomy classifier and self-improvement loop")
    parser.add_argument("--store-id", default=None, help="Store scope (default: DEFAULT_STORE_ID)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create tables and seed the taxonomy")
    p.set_defaults(handler=cmd_init_db)

    p = sub.add_parser("run", help="Classify a catalog")
    p.add_argument("--input", required=True)
    p.add_argument("--kind", choices=[k.value for k in RunKind], default=RunKind.FULL.value)
    p.set_defaults(handler=cmd_run)

    p = sub.add_parser("enqueue", help="Queue a self-improvement batch")
    p.add_argument("--loop-type", choices=[t.value for t in LoopType], required=True)
    p.add_argument("--count", type=int, required=True)
    p.add_argument("--retry-limit", type=int, default=None)
    p.add_argument("--max-structural-changes", type=int, default=None)
    p.add_argument("--auto-apply-policy", choices=[a.value for a in AutoApplyPolicy], default=None)
    p.set_defaults(handler=cmd_enqueue)

    p = sub.add_parser("cancel", help="Cancel a queued or running batch")
    p.add_argument("batch_id", type=_uuid)
    p.set_defaults(handler=cmd_cancel)

    p = sub.add_parser("status", help="Show one batch or recent batches")
    p.add_argument("--batch-id", type=_uuid, default=None)
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(handler=cmd_status)

    p = sub.add_parser("phrase", help="Run an operator phrase")
    p.add_argument("text")
    p.set_defaults(handler=cmd_phrase)

    p = sub.add_parser("worker", help="Run the polling worker")
    p.add_argument("--once", action="store_true")
    p.set_defaults(handler=cmd_worker)

    p = sub.add_parser("harness-eval", help="Evaluate a candidate run")
    p.add_argument("--candidate-run-id", type=_uuid, required=True)
    p.add_argument("--baseline-run-id", type=_uuid, default=None)
    p.add_argument("--benchmark-snapshot-id", type=_uuid, default=None)
    p.set_defaults(handler=cmd_harness_eval)

    p = sub.add_parser("rollback", help="Roll back an applied change")
    p.add_argument("target", help="Applied change id, rollback token or 'latest-applied'")
    p.add_argument("--reason", default="manual_rollback")
    p.set_defaults(handler=cmd_rollback)

    p = sub.add_parser("canary-build", help="Build a canary subset")
    p.add_argument("--input", default=None)
    p.add_argument("--output", default=None)
    p.add_argument("--sample-size", type=int, default=None)
    p.add_argument("--fixed-ratio", type=float, default=None)
    p.add_argument("--seed", default=None)
    p.set_defaults(handler=cmd_canary_build)

    p = sub.add_parser("learn-propose", help="Generate learning proposals")
    p.add_argument("--run-id", type=_uuid, default=None)
    p.add_argument("--max-proposals", type=int, default=30)
    p.set_defaults(handler=cmd_learn_propose)

    p = sub.add_parser("learn-apply", help="Apply pending proposals under a harness result")
    p.add_argument("--harness-run-id", type=_uuid, required=True)
    p.add_argument("--batch-id", type=_uuid, default=None)
    p.add_argument("--run-id", type=_uuid, default=None)
    p.add_argument("--max-structural-changes", type=int, default=1)
    p.set_defaults(handler=cmd_learn_apply)

    p = sub.add_parser("qa-import", help="Import QA feedback for a run")
    p.add_argument("--run-id", type=_uuid, required=True)
    p.add_argument("--input", required=True)
    p.set_defaults(handler=cmd_qa_import)

    return parser


async def _dispatch(args: argparse.Namespace) -> Any:
    try:
        return await args.handler(args)
    finally:
        await dispose_engine()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level)
    try:
        _emit(asyncio.run(_dispatch(args)))
    except TaxonomyLoopError as e:
        logger.error("command_failed", command=args.command, error=e.message, error_type=type(e).__name__)
        _emit({"status": "error", "error": e.message})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
