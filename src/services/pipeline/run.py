"""Pipeline run: classify a catalog against the current taxonomy version.

Stages:
    1. Open a ``pipeline_runs`` row (status running) pinned to the head version
    2. Classify every product with the decision engine (bounded pool)
    3. Extract attributes per assigned category (batched completion calls)
    4. Reduce: run stats, quality gate, confusion hotlist
    5. Persist assignments and stats, write the hotlist CSV

A failure or cancellation in any stage marks the run failed with a reason and
re-raises; failed runs are never used as harness baselines.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import asyncio
import uuid
import structlog

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import classifier_settings, settings
from src.db.base import utcnow
from src.db.models.pipeline_run import PipelineRun, PipelineRunStatus, ProductAssignment, RunKind
from src.models.assignment import CategoryAssignment, ProductDecision
from src.models.catalog import NormalizedProduct
from src.services.classification.engine import DecisionEngine
from src.services.classification.runner import assign_categories
from src.services.extraction.attributes import extract_attributes
from src.services.llm.completer import Completer, extract_attributes_with_degrade
from src.services.llm.embedder import Embedder
from src.services.llm.retry import RetryPolicy
from src.services.quality.aggregator import compute_run_stats
from src.services.quality.hotlist import build_confusion_hotlist, write_hotlist
from src.services.run_logger import RunLogWriter
from src.taxonomy.store import TaxonomyStore

logger = structlog.get_logger(__name__)

ATTRIBUTE_BATCH_SIZE = 20
_REVIEW_ATTRIBUTE_PREFIXES = ("missing_required_", "low_attribute_confidence_")


@dataclass
class PipelineRunResult:
    """Outcome of one completed pipeline run."""
    run_id: uuid.UUID
    store_id: str
    run_kind: RunKind
    taxonomy_version: str
    stats: Dict[str, Any]
    hotlist_path: Optional[str] = None
    decisions: List[ProductDecision] = field(default_factory=list)


def _needs_review(assignment: CategoryAssignment, reasons: Sequence[str], validation_fail_count: int) -> bool:
    if assignment.decision == "review":
        return True
    if validation_fail_count > 0:
        return True
    return any(reason.startswith(_REVIEW_ATTRIBUTE_PREFIXES) for reason in reasons)


class PipelineRunner:
    """Runs the classification pipeline for one store."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store: TaxonomyStore,
        embedder: Embedder,
        completer: Optional[Completer] = None,
        retry_policy: Optional[RetryPolicy] = None,
        output_dir: Optional[str] = None,
        concurrency: Optional[int] = None,
    ):
        self._session_maker = session_maker
        self.store = store
        self.embedder = embedder
        self.completer = completer
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.output_dir = output_dir or settings.output_dir
        self.concurrency = concurrency or classifier_settings.concurrency
        self._log = logger.bind(component="PipelineRunner", store_id=store.store_id)

    async def run(
        self,
        products: Sequence[NormalizedProduct],
        run_kind: RunKind = RunKind.FULL,
        input_path: Optional[str] = None,
        batch_id: Optional[uuid.UUID] = None,
    ) -> PipelineRunResult:
        """Classify ``products`` and persist the run.

        Raises:
            Exception: Any stage failure, after the run row is marked failed
        """
        snapshot = await self.store.current()
        run_id = await self._open_run(run_kind, snapshot.version_id, input_path)
        trace = RunLogWriter(self._session_maker, run_id=run_id, batch_id=batch_id)
        log = self._log.bind(run_id=str(run_id), run_kind=run_kind.value, taxonomy_version=snapshot.version_id)
        log.info("pipeline_run_started", products=len(products))
        await trace.info("ingest", "run_started", {"products": len(products), "input_path": input_path})

        try:
            engine = await DecisionEngine.build(snapshot, self.embedder, retry_policy=self.retry_policy)
            batch = await assign_categories(
                products,
                engine,
                self.embedder,
                completer=self.completer,
                concurrency=self.concurrency,
                retry_policy=self.retry_policy,
            )
            await trace.info("categorize", "categories_assigned", {
                "assigned": len(batch.assignments),
                "embedding_degraded": batch.embedding_degraded,
                "disambiguation_calls": batch.disambiguation_calls,
                "disambiguation_failures": batch.disambiguation_failures,
            })

            decisions = await self._enrich(products, batch.assignments, engine)

            # Reduction only after every product is decided
            stats = compute_run_stats(decisions)
            stats["taxonomy_version"] = snapshot.version_id
            stats["embedding_degraded"] = batch.embedding_degraded
            stats.update(trace.stats())

            hotlist_rows = build_confusion_hotlist(products, batch.assignments, snapshot.document)
            hotlist_path = str(write_hotlist(hotlist_rows, self.output_dir, str(run_id)))
            stats["confusion_hotlist_rows"] = len(hotlist_rows)

            await self._persist(run_id, products, decisions, stats, hotlist_path)
        except asyncio.CancelledError:
            # Stage timeouts cancel the run; it must still end in a terminal state
            reason = "cancelled: run interrupted before completion"
            log.error("pipeline_run_cancelled", error=reason)
            await trace.error("finalize", "run_failed", {"error": reason})
            await trace.flush()
            await self._fail_run(run_id, reason)
            raise
        except Exception as e:
            log.error("pipeline_run_failed", error=str(e))
            await trace.error("finalize", "run_failed", {"error": str(e)})
            await trace.flush()
            await self._fail_run(run_id, str(e))
            raise

        await trace.info("finalize", "run_completed", {
            key: stats.get(key)
            for key in ("unique_products_processed", "auto_accepted_rate", "needs_review_rate", "fallback_category_rate")
        })
        await trace.flush()
        log.info(
            "pipeline_run_completed",
            processed=stats["unique_products_processed"],
            auto_accepted_rate=stats["auto_accepted_rate"],
            needs_review_rate=stats["needs_review_rate"],
        )
        return PipelineRunResult(
            run_id=run_id,
            store_id=self.store.store_id,
            run_kind=run_kind,
            taxonomy_version=snapshot.version_id,
            stats=stats,
            hotlist_path=hotlist_path,
            decisions=decisions,
        )

    # =========================================================================
    # Stages
    # =========================================================================

    async def _enrich(
        self,
        products: Sequence[NormalizedProduct],
        assignments: Sequence[CategoryAssignment],
        engine: DecisionEngine,
    ) -> List[ProductDecision]:
        document = engine.document
        by_category: Dict[str, List[NormalizedProduct]] = defaultdict(list)
        for product, assignment in zip(products, assignments):
            by_category[assignment.category_slug].append(product)

        llm_outputs: Dict[str, Dict[str, Any]] = {}
        if self.completer is not None:
            for slug, members in by_category.items():
                category = document.category(slug)
                if not category.default_attributes:
                    continue
                for start in range(0, len(members), ATTRIBUTE_BATCH_SIZE):
                    chunk = members[start:start + ATTRIBUTE_BATCH_SIZE]
                    llm_outputs.update(
                        await extract_attributes_with_degrade(self.completer, category, chunk, self.retry_policy)
                    )

        decisions: List[ProductDecision] = []
        for product, assignment in zip(products, assignments):
            category = document.category(assignment.category_slug)
            extraction = extract_attributes(
                product.attribute_text,
                category,
                document,
                llm_outputs.get(product.sku),
                classifier_settings.attribute_auto_min_confidence,
            )
            uncertainty = list(extraction.reasons)
            if assignment.decision == "review":
                uncertainty = list(assignment.reasons) + uncertainty
            decisions.append(ProductDecision(
                assignment=assignment,
                title=product.title,
                attribute_values=extraction.values,
                attribute_confidence=extraction.confidence,
                uncertainty_reasons=list(dict.fromkeys(uncertainty)),
                attribute_validation_fail_count=extraction.validation_fail_count,
                needs_review=_needs_review(assignment, extraction.reasons, extraction.validation_fail_count),
            ))
        return decisions

    async def _open_run(self, run_kind: RunKind, taxonomy_version: str, input_path: Optional[str]) -> uuid.UUID:
        async with self._session_maker() as session:
            run = PipelineRun(
                store_id=self.store.store_id,
                run_kind=run_kind,
                status=PipelineRunStatus.RUNNING,
                taxonomy_version=taxonomy_version,
                input_path=input_path,
                stats={},
            )
            session.add(run)
            await session.commit()
            return run.id

    async def _persist(
        self,
        run_id: uuid.UUID,
        products: Sequence[NormalizedProduct],
        decisions: Sequence[ProductDecision],
        stats: Dict[str, Any],
        hotlist_path: str,
    ) -> None:
        async with self._session_maker() as session:
            for product, decision in zip(products, decisions):
                assignment = decision.assignment
                session.add(ProductAssignment(
                    run_id=run_id,
                    sku=product.sku,
                    title=product.title,
                    description=product.description or None,
                    category_slug=assignment.category_slug,
                    top2_slug=assignment.top2_slug,
                    confidence=assignment.confidence,
                    top2_confidence=assignment.top2_confidence,
                    margin=assignment.margin,
                    decision=assignment.decision,
                    reasons=list(assignment.reasons),
                    is_fallback=assignment.is_fallback,
                    contradiction_count=assignment.contradiction_count,
                    needs_review=decision.needs_review,
                    attribute_values=dict(decision.attribute_values),
                    uncertainty_reasons=list(decision.uncertainty_reasons),
                ))
            await session.execute(
                update(PipelineRun)
                .where(PipelineRun.id == run_id)
                .values(
                    status=PipelineRunStatus.COMPLETED,
                    stats=stats,
                    hotlist_path=hotlist_path,
                    finished_at=utcnow(),
                )
            )
            await session.commit()

    async def _fail_run(self, run_id: uuid.UUID, error: str) -> None:
        async with self._session_maker() as session:
            await session.execute(
                update(PipelineRun)
                .where(PipelineRun.id == run_id)
                .values(status=PipelineRunStatus.FAILED, error_message=error[:2000], finished_at=utcnow())
            )
            await session.commit()


async def get_run(session: AsyncSession, run_id: uuid.UUID) -> Optional[PipelineRun]:
    return await session.get(PipelineRun, run_id)


async def latest_completed_run(
    session: AsyncSession,
    store_id: str,
    exclude_run_id: Optional[uuid.UUID] = None,
) -> Optional[PipelineRun]:
    """Most recent non-failed run of a store, optionally skipping one run."""
    query = (
        select(PipelineRun)
        .where(PipelineRun.store_id == store_id)
        .where(PipelineRun.status == PipelineRunStatus.COMPLETED)
        .order_by(PipelineRun.created_at.desc(), PipelineRun.id.desc())
        .limit(1)
    )
    if exclude_run_id is not None:
        query = query.where(PipelineRun.id != exclude_run_id)
    result = await session.execute(query)
    return result.scalar_one_or_none()
