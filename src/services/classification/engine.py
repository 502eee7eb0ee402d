"""Multi-signal category decision engine.

For every category of the taxonomy snapshot the engine computes:

1. Lexical score: ``include_any`` hits (title hits count double) over the
   term-set size, damped when an ``include_all`` term is missing.
2. Semantic score: cosine similarity between product and category
   prototype embeddings, mapped to [0, 1].
3. Attribute compatibility: share of the category's default attributes the
   rule detectors can read off the product text.

``score = 0.45 * lexical + 0.35 * semantic + 0.2 * compatibility`` minus
exclude and contradiction penalties, clipped to [0, 1]. A
``strong_exclude_any`` hit zeroes the score and counts as a contradiction.

Ranking is by score descending, then rule declaration order, so equal
scores always resolve the same way.

Example:
    engine = await DecisionEngine.build(snapshot, embedder)
    assignment = engine.decide(product, vector)
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
import math
import re
import structlog

from src.config import classifier_settings
from src.models.assignment import (
    CategoryAssignment,
    REASON_ATTRIBUTE_COMPATIBLE,
    REASON_BELOW_CONFIDENCE,
    REASON_CONTRADICTION,
    REASON_FALLBACK_RESCUE,
    REASON_GENERIC,
    REASON_LOW_MARGIN,
    REASON_MIXED_SIGNALS,
    REASON_STRONG_LEXICAL,
    REASON_STRONG_SEMANTIC,
    REASON_SUBTYPE_LOCK,
)
from src.models.catalog import NormalizedProduct
from src.services.extraction.attributes import attribute_detected, infer_attribute
from src.services.extraction.text import has_term, normalize_text
from src.services.llm.completer import CategoryChoice
from src.services.llm.embedder import Embedder
from src.services.llm.retry import RetryPolicy
from src.taxonomy.document import CategoryDefinition, CategoryRule
from src.taxonomy.store import TaxonomySnapshot

logger = structlog.get_logger(__name__)

LEXICAL_WEIGHT = 0.45
SEMANTIC_WEIGHT = 0.35
COMPATIBILITY_WEIGHT = 0.2
EXCLUDE_PENALTY = 0.12
EXCLUDE_PENALTY_CAP = 0.25
CONTRADICTION_PENALTY = 0.18
INCLUDE_ALL_MISS_FACTOR = 0.45
FALLBACK_LEXICAL = 0.05
NO_ATTRIBUTE_COMPATIBILITY = 0.4
RESCUE_CLUSTER_WINDOW = 0.05
LLM_BOOST_CAP = 0.04

_GENERIC_PATTERN = re.compile(r"geral|diverso")


@dataclass(frozen=True)
class EngineThresholds:
    """Global decision thresholds; per-rule overrides take precedence."""
    auto_min_confidence: float = 0.76
    auto_min_margin: float = 0.1
    high_risk_extra_confidence: float = 0.06
    rescue_min_signal: float = 0.6

    @classmethod
    def from_settings(cls) -> "EngineThresholds":
        return cls(
            auto_min_confidence=classifier_settings.auto_min_confidence,
            auto_min_margin=classifier_settings.auto_min_margin,
            high_risk_extra_confidence=classifier_settings.high_risk_extra_confidence,
            rescue_min_signal=classifier_settings.rescue_min_signal,
        )


@dataclass(frozen=True)
class CandidateScore:
    """Per-category scoring breakdown for one product."""
    category: CategoryDefinition
    rule: CategoryRule
    order: int
    score: float
    lexical: float
    semantic: float
    compatibility: float
    contradiction_count: int
    lexical_eligible: bool
    exclude_hits: int
    strong_excluded: bool
    lock_matched: bool

    @property
    def slug(self) -> str:
        return self.category.slug

    def with_score(self, score: float) -> "CandidateScore":
        return CandidateScore(
            category=self.category,
            rule=self.rule,
            order=self.order,
            score=score,
            lexical=self.lexical,
            semantic=self.semantic,
            compatibility=self.compatibility,
            contradiction_count=self.contradiction_count,
            lexical_eligible=self.lexical_eligible,
            exclude_hits=self.exclude_hits,
            strong_excluded=self.strong_excluded,
            lock_matched=self.lock_matched,
        )


def clamp_score(value: float) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    size = min(len(a), len(b))
    dot = sum(a[i] * b[i] for i in range(size))
    norm_a = math.sqrt(sum(value * value for value in a))
    norm_b = math.sqrt(sum(value * value for value in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def semantic_score(product_vector: Optional[Sequence[float]], category_vector: Optional[Sequence[float]]) -> float:
    """Cosine mapped to [0, 1]; an absent vector yields 0."""
    if not product_vector or not category_vector:
        return 0.0
    if not any(product_vector) or not any(category_vector):
        return 0.0
    return clamp_score((cosine_similarity(product_vector, category_vector) + 1.0) / 2.0)


def _rank_key(candidate: CandidateScore):
    return (-candidate.score, candidate.order)


def _count_include_hits(normalized_text: str, normalized_title: str, terms: Sequence[str]) -> int:
    hits = 0
    for term in terms:
        normalized_term = normalize_text(term)
        if not normalized_term:
            continue
        # Whole words only; a plural suffix still counts ("canetas")
        if has_term(normalized_text, normalized_term, allow_plural=True):
            hits += 2 if has_term(normalized_title, normalized_term, allow_plural=True) else 1
    return hits


class DecisionEngine:
    """Assigns a category to products against one taxonomy snapshot."""

    def __init__(
        self,
        snapshot: TaxonomySnapshot,
        prototype_vectors: Optional[Dict[str, List[float]]] = None,
        thresholds: Optional[EngineThresholds] = None,
    ):
        self.snapshot = snapshot
        self.document = snapshot.document
        self.prototype_vectors = prototype_vectors or {}
        self.thresholds = thresholds or EngineThresholds.from_settings()
        self._rules = {category.slug: self.document.rule_for(category.slug) for category in self.document.categories}
        self._fallback_slug = self.document.fallback_category.slug
        self._log = logger.bind(component="DecisionEngine", taxonomy_version=snapshot.version_id)

    @classmethod
    async def build(
        cls,
        snapshot: TaxonomySnapshot,
        embedder: Embedder,
        thresholds: Optional[EngineThresholds] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "DecisionEngine":
        """Embed category prototypes and create an engine.

        Prototype embedding failures degrade to no semantic signal rather
        than failing the run.
        """
        categories = snapshot.document.categories
        policy = retry_policy or RetryPolicy.from_settings()
        try:
            vectors = await policy.run(
                embedder.embed_many,
                [category.prototype_text() for category in categories],
                call_kind="prototype_embedding",
            )
            prototype_vectors = {category.slug: vector for category, vector in zip(categories, vectors)}
        except Exception as e:
            logger.warning("prototype_embedding_degraded", error=str(e), categories=len(categories))
            prototype_vectors = {}
        return cls(snapshot, prototype_vectors, thresholds)

    # =========================================================================
    # Scoring
    # =========================================================================

    def _lock_matches(self, rule: CategoryRule, attribute_text: str) -> bool:
        if not rule.subtype_lock:
            return False
        for key, expected in rule.subtype_lock.items():
            value, _ = infer_attribute(key, attribute_text)
            if value is None or normalize_text(str(value)) != normalize_text(expected):
                return False
        return True

    def _contradictions(self, rule: CategoryRule, text: str, strong_hits: int) -> int:
        count = strong_hits
        count += sum(1 for term in rule.contradiction_terms if has_term(text, term))
        if rule.requires_any and not any(has_term(text, term) for term in rule.requires_any):
            count += 1
        return count

    def score_candidates(
        self,
        product: NormalizedProduct,
        vector: Optional[Sequence[float]] = None,
    ) -> List[CandidateScore]:
        """Score every category in declaration order."""
        text = product.normalized_text
        attribute_text = product.attribute_text
        candidates: List[CandidateScore] = []

        for order, category in enumerate(self.document.categories):
            rule = self._rules[category.slug]

            include_hits = _count_include_hits(text, product.normalized_title, rule.include_any)
            include_all_misses = sum(1 for term in rule.include_all if not has_term(text, term))
            exclude_hits = sum(1 for term in rule.exclude_any if has_term(text, term))
            strong_hits = sum(1 for term in rule.strong_exclude_any if has_term(text, term))

            lexical_eligible = (not rule.include_any or include_hits > 0) and include_all_misses == 0
            lexical = 0.0 if not rule.include_any else clamp_score(include_hits / (len(rule.include_any) * 2))
            if rule.include_all and include_all_misses > 0:
                lexical *= INCLUDE_ALL_MISS_FACTOR
            if category.is_fallback:
                lexical = FALLBACK_LEXICAL

            semantic = semantic_score(vector, self.prototype_vectors.get(category.slug))

            if category.default_attributes:
                detected = sum(1 for attribute in category.default_attributes if attribute_detected(attribute.key, attribute_text))
                compatibility = detected / len(category.default_attributes)
            else:
                compatibility = NO_ATTRIBUTE_COMPATIBILITY

            contradictions = self._contradictions(rule, text, strong_hits)
            strong_excluded = strong_hits > 0

            score = LEXICAL_WEIGHT * lexical + SEMANTIC_WEIGHT * semantic + COMPATIBILITY_WEIGHT * compatibility
            score -= min(EXCLUDE_PENALTY_CAP, exclude_hits * EXCLUDE_PENALTY)
            score -= contradictions * CONTRADICTION_PENALTY
            if strong_excluded:
                score = 0.0

            candidates.append(CandidateScore(
                category=category,
                rule=rule,
                order=order,
                score=clamp_score(score),
                lexical=lexical,
                semantic=semantic,
                compatibility=compatibility,
                contradiction_count=contradictions,
                lexical_eligible=lexical_eligible,
                exclude_hits=exclude_hits,
                strong_excluded=strong_excluded,
                lock_matched=self._lock_matches(rule, attribute_text),
            ))
        return candidates

    def rank(self, candidates: Sequence[CandidateScore]) -> List[CandidateScore]:
        """Lexically eligible specific categories plus the fallback, best first."""
        fallback = next(c for c in candidates if c.slug == self._fallback_slug)
        eligible = [
            candidate
            for candidate in candidates
            if not candidate.category.is_fallback and candidate.lexical_eligible and not candidate.strong_excluded
        ]
        return sorted(eligible + [fallback], key=_rank_key)

    def needs_disambiguation(self, ranked: Sequence[CandidateScore]) -> bool:
        """Close or weak top picks are worth a completion-service opinion."""
        if len(ranked) < 2:
            return False
        margin = ranked[0].score - ranked[1].score
        close = margin < max(self.thresholds.auto_min_margin + 0.04, 0.14)
        weak = ranked[0].score < self.thresholds.auto_min_confidence + 0.08
        return close or weak

    # =========================================================================
    # Decision
    # =========================================================================

    def _apply_choice(self, ranked: List[CandidateScore], choice: Optional[CategoryChoice]) -> tuple:
        if choice is None or not choice.category_slug:
            return ranked, None
        window = ranked[:3]
        chosen = next((c for c in window if c.slug == choice.category_slug), None)
        if chosen is None:
            return ranked, None
        # Tie-breaker only: the boost stays small next to lexical/semantic evidence
        boost = min(LLM_BOOST_CAP, max(0.0, choice.confidence - 0.5) * 0.08)
        boosted = chosen.with_score(clamp_score(chosen.score + boost))
        rest = [c for c in ranked if c.slug != chosen.slug]
        return sorted([boosted] + rest, key=_rank_key), choice.reason

    def _subtype_lock(self, candidates: Sequence[CandidateScore]) -> Optional[CandidateScore]:
        locked = [
            candidate
            for candidate in candidates
            if candidate.lock_matched
            and candidate.lexical_eligible
            and not candidate.strong_excluded
            and candidate.contradiction_count == 0
        ]
        return locked[0] if len(locked) == 1 else None

    def _rescue(self, candidates: Sequence[CandidateScore]) -> Optional[CandidateScore]:
        """Pick a specific family when the fallback won but a secondary signal disagrees.

        Signals: an explicit subtype-lock token match, otherwise a semantic
        cluster (best specific category above ``rescue_min_signal`` with
        every near-tied category in the same family).
        """
        pool = [c for c in candidates if not c.category.is_fallback and not c.strong_excluded]
        if not pool:
            return None

        lock_hits = [c for c in pool if c.lock_matched]
        if lock_hits:
            families = {c.category.family for c in lock_hits}
        else:
            by_semantic = sorted(pool, key=lambda c: (-c.semantic, c.order))
            best = by_semantic[0]
            if best.semantic < self.thresholds.rescue_min_signal:
                return None
            families = {
                c.category.family
                for c in by_semantic
                if best.semantic - c.semantic <= RESCUE_CLUSTER_WINDOW
            }

        if len(families) != 1:
            return None
        family = next(iter(families))
        return min((c for c in pool if c.category.family == family), key=_rank_key)

    def _mixed_signals(self, text: str, top1: CandidateScore, top2: Optional[CandidateScore]) -> bool:
        if top2 is None or top1.slug == top2.slug:
            return False
        if not top1.rule.mixed_signal_terms or not top2.rule.mixed_signal_terms:
            return False
        return (
            any(has_term(text, term) for term in top1.rule.mixed_signal_terms)
            and any(has_term(text, term) for term in top2.rule.mixed_signal_terms)
        )

    def _is_generic(self, category: CategoryDefinition) -> bool:
        return (
            category.is_fallback
            or bool(_GENERIC_PATTERN.search(category.slug))
            or bool(_GENERIC_PATTERN.search(normalize_text(category.name_pt)))
        )

    def decide(
        self,
        product: NormalizedProduct,
        vector: Optional[Sequence[float]] = None,
        choice: Optional[CategoryChoice] = None,
        candidates: Optional[Sequence[CandidateScore]] = None,
    ) -> CategoryAssignment:
        """Produce the assignment for one product. Never raises on missing signals."""
        scored = list(candidates) if candidates is not None else self.score_candidates(product, vector)
        ranked = self.rank(scored)
        ranked, choice_reason = self._apply_choice(ranked, choice)

        locked = self._subtype_lock(scored)
        if locked is not None:
            ranked = [locked] + [c for c in ranked if c.slug != locked.slug]

        rescued = False
        if locked is None and ranked[0].category.is_fallback:
            rescue = self._rescue(scored)
            if rescue is not None:
                rescued = True
                ranked = [rescue] + [c for c in ranked if c.slug != rescue.slug]

        top1 = ranked[0]
        top2 = ranked[1] if len(ranked) > 1 else None
        top2_score = top2.score if top2 else 0.0
        margin = clamp_score(top1.score - top2_score)

        rule = top1.rule
        required_confidence = (
            rule.auto_min_confidence if rule.auto_min_confidence is not None else self.thresholds.auto_min_confidence
        )
        if rule.high_risk:
            required_confidence += self.thresholds.high_risk_extra_confidence
        required_margin = rule.auto_min_margin if rule.auto_min_margin is not None else self.thresholds.auto_min_margin

        generic = self._is_generic(top1.category)
        mixed = self._mixed_signals(product.normalized_text, top1, top2)

        reasons: List[str] = []
        if top1.lexical >= 0.6:
            reasons.append(REASON_STRONG_LEXICAL)
        if top1.semantic >= 0.75:
            reasons.append(REASON_STRONG_SEMANTIC)
        if top1.compatibility >= 0.5:
            reasons.append(REASON_ATTRIBUTE_COMPATIBLE)
        if top1.contradiction_count > 0:
            reasons.append(REASON_CONTRADICTION)
        if top1.score < required_confidence:
            reasons.append(REASON_BELOW_CONFIDENCE)
        if margin < required_margin:
            reasons.append(REASON_LOW_MARGIN)
        if generic:
            reasons.append(REASON_GENERIC)
        if mixed:
            reasons.append(REASON_MIXED_SIGNALS)
        if locked is not None:
            reasons.append(REASON_SUBTYPE_LOCK)
        if rescued:
            reasons.append(REASON_FALLBACK_RESCUE)
        if choice_reason:
            reasons.append(choice_reason)

        margin_ok = margin >= required_margin or locked is not None
        auto = (
            top1.score >= required_confidence
            and margin_ok
            and top1.contradiction_count == 0
            and not top1.strong_excluded
            and not mixed
            and not generic
            and not rescued
        )

        return CategoryAssignment(
            sku=product.sku,
            category_slug=top1.slug,
            top2_slug=top2.slug if top2 else None,
            confidence=top1.score,
            top2_confidence=top2_score,
            margin=margin,
            decision="auto" if auto else "review",
            reasons=tuple(reasons),
            is_fallback=top1.category.is_fallback,
            contradiction_count=top1.contradiction_count,
            lexical_score=top1.lexical,
            semantic_score=top1.semantic,
            attribute_compatibility_score=top1.compatibility,
        )
