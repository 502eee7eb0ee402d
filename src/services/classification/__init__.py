"""Product classification service.

Key Components:
    - DecisionEngine: Multi-signal category decision for one product
    - assign_categories: Bounded-concurrency classification of a product set
"""
from src.services.classification.engine import (
    CandidateScore,
    DecisionEngine,
    EngineThresholds,
    clamp_score,
    cosine_similarity,
    semantic_score,
)
from src.services.classification.runner import ClassificationBatch, assign_categories

__all__ = [
    "CandidateScore",
    "DecisionEngine",
    "EngineThresholds",
    "clamp_score",
    "cosine_similarity",
    "semantic_score",
    "ClassificationBatch",
    "assign_categories",
]
