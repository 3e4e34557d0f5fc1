"""Exception hierarchy for the retrieval engine.

Provider adapters never raise these; they are reserved for conditions the
caller has to act on (retry, surface to the user, or fix configuration).
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for engine failures."""

    code: str = "internal"
    retryable: bool = True


class AllSourcesFailedError(EngineError):
    """Every external source failed or returned no data."""

    code = "all_sources_failed"

    def __init__(self, errors: dict[str, str] | None = None):
        self.errors = dict(errors or {})
        detail = "; ".join(f"{source}: {error}" for source, error in self.errors.items())
        message = "All sources failed to provide data"
        super().__init__(f"{message} ({detail})" if detail else message)


class SynthesisError(EngineError):
    """The language-model synthesis call failed or returned nothing."""

    code = "synthesis_failed"


class IngestionError(EngineError):
    """A knowledge-base write did not complete; safe to retry."""

    code = "ingestion_failed"


class UnknownSourceError(IngestionError):
    code = "unknown_source"
    retryable = False

    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Unknown source: {source_id}")


class EmbeddingDimensionError(IngestionError):
    code = "embedding_dimension_mismatch"
    retryable = False

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Embedding has {actual} dimensions, expected {expected}")


class VectorIndexUnavailable(EngineError):
    """The vector index service could not be reached."""

    code = "vector_index_unavailable"
