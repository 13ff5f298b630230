"""Error types raised by vector store clients."""

from __future__ import annotations

from codeindex.core.errors import ConfigurationError

__all__ = [
    "CollectionDimensionMismatchError",
    "StoreConnectionError",
    "StoreError",
]


class StoreError(RuntimeError):
    """Raised when a vector store operation fails.

    ``address`` is the store location (URL or directory) and ``operation``
    the client method that failed, so callers can report both verbatim.
    """

    def __init__(
        self,
        message: str,
        *,
        address: str,
        operation: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.address = address
        self.operation = operation
        self.__cause__ = cause


class StoreConnectionError(StoreError):
    """Raised when the store cannot be reached at all."""


class CollectionDimensionMismatchError(ConfigurationError):
    """Existing collection was created for a different vector dimension."""

    def __init__(
        self,
        *,
        collection: str,
        expected: int,
        actual: int,
        address: str,
    ) -> None:
        super().__init__(
            (
                f"Collection {collection!r} at {address} stores vectors of "
                f"dimension {actual}, but the embedder produces {expected}. "
                "Use another collection or delete the existing one."
            ),
            field="embedder.dimension",
        )
        self.collection = collection
        self.expected = expected
        self.actual = actual
        self.address = address
