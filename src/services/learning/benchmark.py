"""Benchmark snapshots for the harness gate.

A snapshot freezes the store's QA-reviewed products plus recent hard cases
(thin-margin or contradicted assignments). Items are sorted and hashed as
canonical JSON so identical evidence always produces the same hash.
"""
from typing import Any, Dict, List, Optional
import hashlib
import json
import uuid
import structlog

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import harness_settings
from src.db.models.learning import BenchmarkSnapshot
from src.db.models.pipeline_run import PipelineRun, PipelineRunStatus, ProductAssignment, QAFeedback

logger = structlog.get_logger(__name__)

HARD_CASE_MARGIN = 0.12
RECENT_RUN_LIMIT = 15


def snapshot_hash(store_id: str, items: List[Dict[str, Any]]) -> str:
    """sha256 of the canonical JSON form of a snapshot's content."""
    canonical = json.dumps({"store_id": store_id, "items": items}, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class BenchmarkBuilder:
    """Builds and looks up benchmark snapshots for one store."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], store_id: str):
        self._session_maker = session_maker
        self.store_id = store_id
        self._log = logger.bind(component="BenchmarkBuilder", store_id=store_id)

    async def get(self, snapshot_id: uuid.UUID) -> Optional[BenchmarkSnapshot]:
        async with self._session_maker() as session:
            snapshot = await session.get(BenchmarkSnapshot, snapshot_id)
            if snapshot is None or snapshot.store_id != self.store_id:
                return None
            return snapshot

    async def latest(self) -> Optional[BenchmarkSnapshot]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(BenchmarkSnapshot)
                .where(BenchmarkSnapshot.store_id == self.store_id)
                .order_by(BenchmarkSnapshot.created_at.desc(), BenchmarkSnapshot.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def _qa_items(self, session: AsyncSession) -> List[Dict[str, Any]]:
        result = await session.execute(
            select(QAFeedback)
            .join(PipelineRun, PipelineRun.id == QAFeedback.run_id)
            .where(PipelineRun.store_id == self.store_id)
            .where(QAFeedback.review_status.in_(("pass", "fail")))
            .order_by(QAFeedback.created_at.desc())
        )
        items: Dict[str, Dict[str, Any]] = {}
        for row in result.scalars():
            if row.sku in items:
                continue
            label = row.corrected_category if row.review_status == "fail" and row.corrected_category else row.predicted_category
            items[row.sku] = {
                "sku": row.sku,
                "title": row.title or "",
                "label": label,
                "origin": "qa_feedback",
                "review_status": row.review_status,
            }
        return list(items.values())

    async def _hard_case_items(self, session: AsyncSession, limit: int) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        recent_runs = (
            select(PipelineRun.id)
            .where(PipelineRun.store_id == self.store_id)
            .where(PipelineRun.status == PipelineRunStatus.COMPLETED)
            .order_by(PipelineRun.created_at.desc())
            .limit(RECENT_RUN_LIMIT)
        )
        result = await session.execute(
            select(ProductAssignment)
            .where(ProductAssignment.run_id.in_(recent_runs))
            .where(or_(
                ProductAssignment.margin < HARD_CASE_MARGIN,
                ProductAssignment.contradiction_count > 0,
            ))
            .order_by(ProductAssignment.margin.asc(), ProductAssignment.sku.asc())
            .limit(limit * 2)
        )
        items: Dict[str, Dict[str, Any]] = {}
        for row in result.scalars():
            if row.sku in items:
                continue
            items[row.sku] = {
                "sku": row.sku,
                "title": row.title,
                "label": None,
                "origin": "hard_case",
                "predicted_category": row.category_slug,
                "top2_category": row.top2_slug,
            }
            if len(items) >= limit:
                break
        return list(items.values())

    async def build(self, hard_case_limit: Optional[int] = None) -> BenchmarkSnapshot:
        """Freeze and persist a new snapshot from current evidence."""
        limit = harness_settings.benchmark_hard_case_limit if hard_case_limit is None else hard_case_limit
        async with self._session_maker() as session:
            qa_items = await self._qa_items(session)
            qa_skus = {item["sku"] for item in qa_items}
            hard_items = [item for item in await self._hard_case_items(session, limit) if item["sku"] not in qa_skus]
            items = sorted(qa_items + hard_items, key=lambda item: (item["origin"], item["sku"]))

            snapshot = BenchmarkSnapshot(
                store_id=self.store_id,
                sample_size=len(items),
                content_hash=snapshot_hash(self.store_id, items),
                items=items,
                source={
                    "strategy": "qa_feedback_plus_hard_cases",
                    "qa_reviewed_count": len(qa_items),
                    "qa_fail_count": sum(1 for item in qa_items if item.get("review_status") == "fail"),
                    "hard_case_count": len(hard_items),
                },
            )
            session.add(snapshot)
            await session.commit()

        self._log.info(
            "benchmark_snapshot_built",
            snapshot_id=str(snapshot.id),
            sample_size=snapshot.sample_size,
            content_hash=snapshot.content_hash,
        )
        return snapshot
