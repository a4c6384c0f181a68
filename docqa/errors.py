"""Exceptions raised by the docqa pipeline."""
from typing import Optional, Sequence


class DocQAError(Exception):
    """Base exception for all docqa errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidConfiguration(DocQAError):
    """Bad chunking parameters, dimensionality or model mismatch. Never retried."""


class ServiceUnavailable(DocQAError):
    """A remote model service kept failing after the retry budget was spent."""

    def __init__(self, message: str, attempts: int = 0, status_code: Optional[int] = None):
        self.attempts = attempts
        self.status_code = status_code
        super().__init__(message)


class EmbeddingServiceUnavailable(ServiceUnavailable):
    """Embedding endpoint failed for one or more batches."""

    def __init__(
        self,
        message: str,
        batch_indices: Sequence[int] = (),
        attempts: int = 0,
        status_code: Optional[int] = None,
    ):
        self.batch_indices = list(batch_indices)
        super().__init__(
            f"{message} (batches={self.batch_indices})",
            attempts=attempts,
            status_code=status_code,
        )


class GenerationServiceUnavailable(ServiceUnavailable):
    """Chat completion endpoint failed."""


class CollectionNotFound(DocQAError):
    """Collection does not exist (strict mode only)."""

    def __init__(self, collection: str):
        self.collection = collection
        super().__init__(f"Collection not found: {collection}")


class StorageIOError(DocQAError):
    """Persistence layer failure."""

    def __init__(self, message: str, collection: str, operation: str):
        self.collection = collection
        self.operation = operation
        super().__init__(f"{operation} on collection '{collection}' failed: {message}")
