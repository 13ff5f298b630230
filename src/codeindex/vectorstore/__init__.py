"""Vector store clients keyed by point id and source path."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable

from codeindex.models import VectorPoint
from codeindex.vectorstore.errors import (
    CollectionDimensionMismatchError,
    StoreConnectionError,
    StoreError,
)

__all__ = [
    "CollectionDimensionMismatchError",
    "FaissVectorStore",
    "QdrantVectorStore",
    "StoreConnectionError",
    "StoreError",
    "VectorStoreClient",
]


@runtime_checkable
class VectorStoreClient(Protocol):
    """Boundary contract for vector stores."""

    @property
    def address(self) -> str:
        """Return the store location used in error messages."""

    async def ensure_collection(self, dimension: int) -> None:
        """Create the collection or verify its vector dimension."""

    async def upsert(self, points: Sequence[VectorPoint]) -> None:
        """Insert ``points``, overwriting existing points with equal ids."""

    async def delete_by_source(self, source_path: str) -> None:
        """Remove every point whose payload references ``source_path``."""

    async def count(self, source_path: str | None = None) -> int:
        """Return the number of stored points, optionally per source."""

    async def fetch(self, point_ids: Sequence[str]) -> tuple[VectorPoint, ...]:
        """Return the stored points for ``point_ids`` that exist."""

    async def flush(self) -> None:
        """Make every acknowledged mutation durable."""

    async def aclose(self) -> None:
        """Release connections held by the client."""


if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .faiss_store import FaissVectorStore
    from .qdrant import QdrantVectorStore


def __getattr__(name: str) -> object:
    if name == "QdrantVectorStore":
        from .qdrant import QdrantVectorStore

        return QdrantVectorStore
    if name == "FaissVectorStore":
        from .faiss_store import FaissVectorStore

        return FaissVectorStore

    message = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(message)


def __dir__() -> list[str]:
    return sorted({*globals(), *__all__})
