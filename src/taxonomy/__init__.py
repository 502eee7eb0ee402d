"""Versioned taxonomy: document model, seed loader, store and rule patches."""
from src.taxonomy.document import (
    AttributeDefinition,
    AttributePolicies,
    AttributePolicy,
    CategoryDefinition,
    CategoryRule,
    TaxonomyDocument,
)
from src.taxonomy.loader import load_seed_document
from src.taxonomy.rule_patch import RulePatchResult, apply_payload, dedupe_terms
from src.taxonomy.store import TaxonomySnapshot, TaxonomyStore, compute_version_id

__all__ = [
    "AttributeDefinition",
    "AttributePolicies",
    "AttributePolicy",
    "CategoryDefinition",
    "CategoryRule",
    "TaxonomyDocument",
    "load_seed_document",
    "RulePatchResult",
    "apply_payload",
    "dedupe_terms",
    "TaxonomySnapshot",
    "TaxonomyStore",
    "compute_version_id",
]
