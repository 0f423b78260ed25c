"""
Shared error types for core services.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class ProviderError(RuntimeError):
    """Raised when an upstream embedding or generation call fails."""

    retryable = True


class EmbeddingProviderError(ProviderError):
    """Raised when the embedding provider is unavailable."""


class GenerationProviderError(ProviderError):
    """Raised when the text-generation provider is unavailable."""


class ProviderTimeout(ProviderError):
    """Raised when an upstream call exceeds its timeout."""


class SummaryGenerationError(ProviderError):
    """Raised when a summary or narrative could not be generated."""


class DimensionMismatch(RuntimeError):
    """Vectors of incompatible length were combined or compared."""

    retryable = False

    def __init__(self, expected: int, actual: int, message: str | None = None):
        super().__init__(message or f"expected dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class NotFound(LookupError):
    def __init__(self, entity: str, key: str):
        super().__init__(f"{entity} not found: {key}")
        self.entity = entity
        self.key = key


class StoreWriteConflict(RuntimeError):
    """Raised when a concurrent writer changed a row between read and write."""
