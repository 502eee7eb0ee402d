"""Pydantic validation models.

Catalog input rows and decision engine results.
"""

from src.models.catalog import CatalogRow, NormalizedProduct
from src.models.assignment import (
    CategoryAssignment,
    ConfusionAlert,
    Decision,
    HISTOGRAM_BUCKETS,
    ProductDecision,
)

__all__ = [
    "CatalogRow",
    "NormalizedProduct",
    "CategoryAssignment",
    "ConfusionAlert",
    "Decision",
    "HISTOGRAM_BUCKETS",
    "ProductDecision",
]
