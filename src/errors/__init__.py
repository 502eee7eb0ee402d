"""Error handling module."""
from src.errors.exceptions import (
    TaxonomyLoopError,
    ValidationError,
    TaxonomyIntegrityError,
    ProposalValidationError,
    PhraseParseError,
    CapabilityError,
    ConsistencyError,
    StaleTaxonomyVersionError,
    RollbackError,
    InvalidTransitionError,
    StageTimeoutError,
    CanaryError,
    DatabaseError,
    CatalogReadError,
)

__all__ = [
    "TaxonomyLoopError",
    "ValidationError",
    "TaxonomyIntegrityError",
    "ProposalValidationError",
    "PhraseParseError",
    "CapabilityError",
    "ConsistencyError",
    "StaleTaxonomyVersionError",
    "RollbackError",
    "InvalidTransitionError",
    "StageTimeoutError",
    "CanaryError",
    "DatabaseError",
    "CatalogReadError",
]
