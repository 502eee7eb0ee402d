"""Learning proposal generator.

Mines three kinds of evidence into typed, scored proposals:

1. QA failures: per corrected category, the most frequent content token not
   already in that category's term sets becomes a ``rule_term_add``.
2. Failed gate metrics: the top confusion category's threshold is nudged
   one fixed step in the safe direction, clamped to a hard range.
3. Confusion pressure: categories with enough low-margin and contradiction
   counts get a low-confidence ``taxonomy_merge`` suggestion.

Candidates are sorted by expected impact (stable on generation order) and
truncated before persisting.
"""
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import uuid
import structlog

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models.learning import STRUCTURAL_KINDS, LearningProposal, ProposalKind, ProposalStatus
from src.db.models.pipeline_run import QAFeedback
from src.errors.exceptions import DatabaseError
from src.services.extraction.text import normalize_text, tokenize
from src.taxonomy.document import TaxonomyDocument
from src.taxonomy.store import TaxonomyStore

logger = structlog.get_logger(__name__)

QA_FAIL_ROW_LIMIT = 500
DEFAULT_MAX_PROPOSALS = 30
STRUCTURAL_PRESSURE_FLOOR = 4
STRUCTURAL_ALERT_LIMIT = 2
STRUCTURAL_MERGE_VALUE = "structural_merge_candidate"

DEFAULT_AUTO_MIN_CONFIDENCE = 0.76
DEFAULT_AUTO_MIN_MARGIN = 0.1
DEFAULT_FALLBACK_AUTO_MIN_CONFIDENCE = 0.86
THRESHOLD_STEP = 0.01


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class QAFailRow:
    """QA verdict with the evidence text the token miner reads."""
    sku: str
    predicted_category: str
    corrected_category: Optional[str]
    title: str = ""
    description: str = ""


@dataclass
class ProposalCandidate:
    """Generated, not yet persisted proposal."""
    kind: ProposalKind
    confidence_score: float
    expected_impact_score: float
    payload: Dict[str, Any]
    provenance: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_structural(self) -> bool:
        return self.kind in STRUCTURAL_KINDS


@dataclass(frozen=True)
class GenerationOptions:
    """Knobs for one generation pass."""
    max_proposals: int = DEFAULT_MAX_PROPOSALS
    min_confidence: float = 0.0
    allow_structural: bool = True


def _pick_top_token(rows: Sequence[QAFailRow], disallowed: set) -> Optional[str]:
    counts: Counter = Counter()
    for row in rows:
        for token in tokenize(f"{row.title} {row.description}"):
            if len(token) < 3 or token.isdigit() or token in disallowed:
                continue
            counts[token] += 1
    if not counts:
        return None
    # First-seen token wins ties
    return max(counts.items(), key=lambda item: item[1])[0]


def _term_proposals(document: TaxonomyDocument, qa_rows: Sequence[QAFailRow]) -> List[ProposalCandidate]:
    grouped: Dict[str, List[QAFailRow]] = defaultdict(list)
    for row in qa_rows:
        corrected = (row.corrected_category or "").strip()
        if corrected:
            grouped[corrected].append(row)

    candidates = []
    for corrected, rows in grouped.items():
        if not document.has_category(corrected):
            continue
        rule = document.rule_for(corrected)
        disallowed = {
            normalize_text(term)
            for term in (*rule.include_any, *rule.exclude_any, *rule.strong_exclude_any)
        }
        token = _pick_top_token(rows, disallowed)
        if token is None:
            continue
        candidates.append(ProposalCandidate(
            kind=ProposalKind.RULE_TERM_ADD,
            confidence_score=clamp(0.6 + len(rows) * 0.02),
            expected_impact_score=clamp(len(rows) / 25),
            payload={
                "target_slug": corrected,
                "field": "include_any",
                "action": "add",
                "value": token,
                "reason": "qa_fail_correction_signal",
            },
            provenance={
                "strategy": "qa_feedback_term_mining",
                "corrected_category": corrected,
                "fail_count": len(rows),
                "sample_skus": [row.sku for row in rows[:5]],
            },
        ))
    return candidates


def _threshold_proposal(
    target_slug: str,
    field_name: str,
    value: float,
    reason: str,
    confidence: float,
    impact: float,
    metric: str,
) -> ProposalCandidate:
    return ProposalCandidate(
        kind=ProposalKind.THRESHOLD_TUNE,
        confidence_score=confidence,
        expected_impact_score=impact,
        payload={
            "target_slug": target_slug,
            "field": field_name,
            "action": "set",
            "value": round(value, 4),
            "reason": reason,
        },
        provenance={"strategy": "gate_metric_adjustment", "metric": metric, "reason": reason},
    )


def _sorted_alerts(alerts: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(
        alerts,
        key=lambda alert: -(int(alert.get("contradiction_count", 0)) + int(alert.get("low_margin_count", 0))),
    )


def _threshold_proposals(
    document: TaxonomyDocument,
    failed_metrics: Sequence[str],
    alerts: Sequence[Dict[str, Any]],
) -> List[ProposalCandidate]:
    failed = set(failed_metrics)
    ordered = _sorted_alerts(alerts)
    top_slug = ordered[0].get("category_slug") if ordered else None
    candidates = []

    if "auto_accepted_rate" in failed and top_slug and document.has_category(top_slug):
        current = document.rule_for(top_slug).auto_min_confidence
        current = DEFAULT_AUTO_MIN_CONFIDENCE if current is None else current
        candidates.append(_threshold_proposal(
            top_slug, "auto_min_confidence", clamp(current - THRESHOLD_STEP, 0.55, 0.98),
            "raise_auto_acceptance", 0.72, 0.5, "auto_accepted_rate",
        ))

    if "needs_review_rate" in failed and top_slug and document.has_category(top_slug):
        current = document.rule_for(top_slug).auto_min_margin
        current = DEFAULT_AUTO_MIN_MARGIN if current is None else current
        candidates.append(_threshold_proposal(
            top_slug, "auto_min_margin", clamp(current - THRESHOLD_STEP, 0.04, 0.4),
            "reduce_review_pressure", 0.7, 0.45, "needs_review_rate",
        ))

    if "fallback_category_rate" in failed:
        fallback_slug = document.fallback_category.slug
        current = document.rule_for(fallback_slug).auto_min_confidence
        current = DEFAULT_FALLBACK_AUTO_MIN_CONFIDENCE if current is None else current
        candidates.append(_threshold_proposal(
            fallback_slug, "auto_min_confidence", clamp(current + THRESHOLD_STEP, 0.5, 0.98),
            "contain_fallback_expansion", 0.74, 0.52, "fallback_category_rate",
        ))
    return candidates


def _structural_proposals(alerts: Sequence[Dict[str, Any]]) -> List[ProposalCandidate]:
    candidates = []
    for alert in _sorted_alerts(alerts)[:STRUCTURAL_ALERT_LIMIT]:
        pressure = int(alert.get("low_margin_count", 0)) + int(alert.get("contradiction_count", 0))
        if pressure < STRUCTURAL_PRESSURE_FLOOR:
            continue
        candidates.append(ProposalCandidate(
            kind=ProposalKind.TAXONOMY_MERGE,
            confidence_score=clamp(0.45 + pressure * 0.03),
            expected_impact_score=clamp(pressure / 20),
            payload={
                "target_slug": alert.get("category_slug"),
                "field": "include_any",
                "action": "add",
                "value": STRUCTURAL_MERGE_VALUE,
                "reason": "high_confusion_structural_signal",
            },
            provenance={"strategy": "confusion_structural_signal", "alert": dict(alert)},
        ))
    return candidates


def generate_proposals(
    document: TaxonomyDocument,
    qa_rows: Sequence[QAFailRow],
    failed_metrics: Sequence[str] = (),
    alerts: Sequence[Dict[str, Any]] = (),
    options: Optional[GenerationOptions] = None,
) -> List[ProposalCandidate]:
    """Build scored proposal candidates from QA failures and run signals.

    Args:
        document: Taxonomy the proposals target
        qa_rows: QA rows with review_status fail
        failed_metrics: Gate metrics the run failed
        alerts: ``top_confusion_alerts`` from the run stats
        options: Max count, confidence floor, structural toggle

    Returns:
        Candidates sorted by expected impact descending
    """
    options = options or GenerationOptions()
    candidates = _term_proposals(document, qa_rows)
    candidates.extend(_threshold_proposals(document, failed_metrics, alerts))
    if options.allow_structural:
        candidates.extend(_structural_proposals(alerts))

    candidates = [c for c in candidates if c.confidence_score >= options.min_confidence]
    candidates.sort(key=lambda c: -c.expected_impact_score)
    return candidates[:max(1, options.max_proposals)]


class ProposalGenerator:
    """Reads evidence from the database and persists generated proposals."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], store: TaxonomyStore):
        self._session_maker = session_maker
        self.store = store
        self._log = logger.bind(component="ProposalGenerator", store_id=store.store_id)

    async def read_qa_fail_rows(self, run_id: Optional[uuid.UUID] = None) -> List[QAFailRow]:
        query = (
            select(QAFeedback)
            .where(QAFeedback.review_status == "fail")
            .order_by(QAFeedback.created_at.desc())
            .limit(QA_FAIL_ROW_LIMIT)
        )
        if run_id is not None:
            query = query.where(QAFeedback.run_id == run_id)
        async with self._session_maker() as session:
            result = await session.execute(query)
            return [
                QAFailRow(
                    sku=row.sku,
                    predicted_category=row.predicted_category,
                    corrected_category=row.corrected_category,
                    title=row.title or "",
                    description=row.description or "",
                )
                for row in result.scalars()
            ]

    async def generate(
        self,
        *,
        batch_id: Optional[uuid.UUID] = None,
        run_id: Optional[uuid.UUID] = None,
        failed_metrics: Sequence[str] = (),
        alerts: Sequence[Dict[str, Any]] = (),
        options: Optional[GenerationOptions] = None,
    ) -> List[LearningProposal]:
        """Generate and persist proposals for a run/batch scope.

        Raises:
            DatabaseError: Proposals could not be stored
        """
        snapshot = await self.store.current()
        qa_rows = await self.read_qa_fail_rows(run_id)
        candidates = generate_proposals(snapshot.document, qa_rows, failed_metrics, alerts, options)

        rows = [
            LearningProposal(
                store_id=self.store.store_id,
                batch_id=batch_id,
                run_id=run_id,
                kind=candidate.kind,
                status=ProposalStatus.PROPOSED,
                confidence_score=candidate.confidence_score,
                expected_impact_score=candidate.expected_impact_score,
                payload=candidate.payload,
                provenance={**candidate.provenance, "taxonomy_version": snapshot.version_id},
            )
            for candidate in candidates
        ]
        try:
            async with self._session_maker() as session:
                session.add_all(rows)
                await session.commit()
        except SQLAlchemyError as e:
            self._log.error("proposal_insert_failed", error=str(e))
            raise DatabaseError(f"Failed to store learning proposals: {e}") from e

        self._log.info(
            "proposals_generated",
            count=len(rows),
            qa_fail_rows=len(qa_rows),
            failed_metrics=list(failed_metrics),
            batch_id=str(batch_id) if batch_id else None,
        )
        return rows
