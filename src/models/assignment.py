"""
Decision Engine Result Models

``CategoryAssignment`` is produced fresh for every classification and
never mutated afterwards.
"""

from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

Decision = Literal["auto", "review"]

# Reason codes attached to assignments
REASON_STRONG_LEXICAL = "strong_lexical_match"
REASON_STRONG_SEMANTIC = "strong_semantic_match"
REASON_ATTRIBUTE_COMPATIBLE = "attribute_compatible"
REASON_CONTRADICTION = "category_contradiction"
REASON_BELOW_CONFIDENCE = "below_auto_confidence"
REASON_LOW_MARGIN = "low_margin"
REASON_GENERIC = "generic_or_fallback_category"
REASON_MIXED_SIGNALS = "mixed_variant_signals"
REASON_FALLBACK_RESCUE = "fallback_rescue_applied"
REASON_SUBTYPE_LOCK = "subtype_lock"
REASON_LLM_DISAMBIGUATION = "llm_disambiguation"

HISTOGRAM_BUCKETS: Tuple[str, ...] = ("0.0-0.2", "0.2-0.4", "0.4-0.6", "0.6-0.8", "0.8-1.0")


class CategoryAssignment(BaseModel):
    """Category decision for one product."""

    model_config = ConfigDict(frozen=True)

    sku: str
    category_slug: str
    top2_slug: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    top2_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    margin: float = Field(ge=0.0, le=1.0, description="confidence - top2_confidence, clipped at 0")
    decision: Decision
    reasons: Tuple[str, ...] = ()
    is_fallback: bool = False
    contradiction_count: int = Field(default=0, ge=0)
    lexical_score: float = 0.0
    semantic_score: float = 0.0
    attribute_compatibility_score: float = 0.0


class ConfusionAlert(BaseModel):
    """Per-category confusion counters for one run."""

    model_config = ConfigDict(frozen=True)

    category_slug: str
    affected_count: int = 0
    low_margin_count: int = 0
    contradiction_count: int = 0
    fallback_count: int = 0


class ProductDecision(BaseModel):
    """Assignment plus attribute extraction for one product."""

    model_config = ConfigDict(frozen=True)

    assignment: CategoryAssignment
    title: str
    attribute_values: Dict[str, object] = Field(default_factory=dict)
    attribute_confidence: Dict[str, float] = Field(default_factory=dict)
    uncertainty_reasons: List[str] = Field(default_factory=list)
    attribute_validation_fail_count: int = 0
    needs_review: bool = True
