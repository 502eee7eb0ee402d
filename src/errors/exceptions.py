"""Custom exception hierarchy for the taxonomy classifier and its learning loop."""


class TaxonomyLoopError(Exception):
    """Base exception for all classifier and self-improvement errors."""
    
    def __init__(self, message: str, *args, **kwargs):
        """Initialize error with message."""
        self.message = message
        super().__init__(message, *args, **kwargs)


class ValidationError(TaxonomyLoopError):
    """Raised when input validation fails."""
    pass


class TaxonomyIntegrityError(ValidationError):
    """Raised when a taxonomy document breaks referential integrity."""
    pass


class ProposalValidationError(ValidationError):
    """Raised when a proposal targets an unknown slug or uses an illegal field/action."""
    pass


class PhraseParseError(ValidationError):
    """Raised when an operator phrase cannot be mapped to a command."""
    pass


class CapabilityError(TaxonomyLoopError):
    """Raised when the completion or embedding service fails after retries."""
    pass


class ConsistencyError(TaxonomyLoopError):
    """Raised when a mutation would violate versioning or lifecycle rules."""
    pass


class StaleTaxonomyVersionError(ConsistencyError):
    """Raised when an apply reads a taxonomy version that is no longer current."""
    
    def __init__(self, store_id: str, expected: str, actual: str | None):
        self.store_id = store_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Taxonomy version for store '{store_id}' moved: expected {expected}, found {actual}"
        )


class RollbackError(ConsistencyError):
    """Raised when an applied change cannot be rolled back."""
    pass


class InvalidTransitionError(ConsistencyError):
    """Raised when a batch or run status transition is not allowed."""
    pass


class StageTimeoutError(TaxonomyLoopError):
    """Raised when a loop stage exceeds its configured timeout."""
    
    def __init__(self, stage: str, timeout_seconds: float):
        self.stage = stage
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Stage '{stage}' timed out after {timeout_seconds:g}s")


class CanaryError(TaxonomyLoopError):
    """Raised when a canary subset cannot be built or evaluated."""
    pass


class DatabaseError(TaxonomyLoopError):
    """Raised when database operations fail."""
    pass


class CatalogReadError(TaxonomyLoopError):
    """Raised when a catalog or QA file cannot be read."""
    pass
