"""Exception hierarchy for the ingestion pipeline.

Failures are isolated to the smallest unit that can fail: a page falls back
to sentinel text, a document is skipped, and only configuration or store
errors stop a run.
"""


class StagevecError(Exception):
    """Base class for all stagevec errors."""


class ConfigurationError(StagevecError):
    """Invalid or missing configuration. Aborts the run."""


class DocumentReadError(StagevecError):
    """A whole document could not be read or opened."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class EmbeddingError(StagevecError):
    """The embedding service failed or returned an unusable vector."""


class ModelMismatchError(StagevecError):
    """A vector from a different model or dimension was written to a pinned store."""


class StoreError(StagevecError):
    """Chunk store read/write failure."""


class StoreUnavailableError(StoreError):
    """The chunk store cannot be reached. Aborts the run."""


class ScopedUrlError(StagevecError):
    """A scoped URL is malformed, expired, or signed by another stage."""
