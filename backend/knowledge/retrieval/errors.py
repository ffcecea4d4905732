"""
Error taxonomy for hybrid retrieval.

Degraded-result conditions (one branch unavailable, missing lexical index)
never raise; they are recovered locally with an empty branch result.
"""


class RetrievalError(Exception):
    """Base class for retrieval failures surfaced to callers."""


class RetrievalUnavailableError(RetrievalError):
    """Both the vector and the keyword branch failed for the same query."""

    def __init__(self, tenant_id: str, errors: dict) -> None:
        self.tenant_id = tenant_id
        self.errors = dict(errors)
        detail = "; ".join(f"{name}: {err}" for name, err in self.errors.items())
        super().__init__(f"All retrieval branches failed for tenant {tenant_id}: {detail}")


class ConfigurationError(RetrievalError):
    """Misconfiguration that retrying cannot fix."""


class EmbeddingDimensionError(ConfigurationError):
    """The embedding collaborator returned a vector of unexpected length."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Query embedding has dimension {actual}, expected {expected}"
        )
