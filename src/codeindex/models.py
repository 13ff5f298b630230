"""Value objects flowing through the indexing pipeline."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

__all__ = [
    "POINT_NAMESPACE",
    "Chunk",
    "ChunkTooLarge",
    "EmbeddingBatch",
    "EmbeddingResult",
    "EmbeddingVector",
    "VectorPoint",
    "point_id_for",
]

EmbeddingVector = tuple[float, ...]

# Fixed namespace so point ids stay stable across runs and machines.
POINT_NAMESPACE = uuid.UUID("6f1c1d52-5f0e-4d38-9a3e-0b7c6c1f2a91")


def point_id_for(source_path: str, index: int) -> str:
    """Return the deterministic point id for chunk ``index`` of a file.

    Example:
        >>> point_id_for("src/app.py", 0) == point_id_for("src/app.py", 0)
        True
        >>> point_id_for("src/app.py", 0) == point_id_for("src/app.py", 1)
        False
    """

    return str(uuid.uuid5(POINT_NAMESPACE, f"{source_path}\x00{index}"))


@dataclass(frozen=True, slots=True)
class Chunk:
    """One embeddable unit of text taken from a workspace file."""

    source_path: str
    index: int
    text: str
    content_hash: str
    start_line: int | None = None
    end_line: int | None = None

    def __post_init__(self) -> None:
        if not self.source_path:
            raise ValueError("source_path cannot be empty")
        if self.index < 0:
            raise ValueError("index must be >= 0")

    @property
    def key(self) -> tuple[str, int]:
        return (self.source_path, self.index)

    @property
    def point_id(self) -> str:
        return point_id_for(self.source_path, self.index)


@dataclass(frozen=True, slots=True)
class EmbeddingBatch:
    """Ordered group of chunks sent to the provider in a single call."""

    chunks: tuple[Chunk, ...]
    token_count: int = 0
    sequence: int = 0
    item_tokens: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if not self.chunks:
            raise ValueError("an embedding batch cannot be empty")
        object.__setattr__(self, "chunks", tuple(self.chunks))
        object.__setattr__(self, "item_tokens", tuple(self.item_tokens))
        if self.item_tokens and len(self.item_tokens) != len(self.chunks):
            raise ValueError("item_tokens must match chunks one to one")

    def __len__(self) -> int:
        return len(self.chunks)

    def tokens_for(self, position: int) -> int | None:
        if not self.item_tokens:
            return None
        return self.item_tokens[position]

    @property
    def texts(self) -> tuple[str, ...]:
        return tuple(chunk.text for chunk in self.chunks)

    @property
    def source_paths(self) -> tuple[str, ...]:
        """Distinct source paths in first-seen order."""

        return tuple(dict.fromkeys(chunk.source_path for chunk in self.chunks))


@dataclass(frozen=True, slots=True)
class EmbeddingResult:
    """A chunk paired with the vector the provider produced for it."""

    chunk: Chunk
    vector: EmbeddingVector


@dataclass(frozen=True, slots=True)
class VectorPoint:
    """Unit persisted in the vector store."""

    id: str
    vector: EmbeddingVector
    payload: Mapping[str, Any] = field(default_factory=dict)

    @property
    def source_path(self) -> str:
        return str(self.payload.get("source_path", ""))

    @classmethod
    def from_result(
        cls,
        result: EmbeddingResult,
        *,
        token_count: int | None = None,
    ) -> "VectorPoint":
        chunk = result.chunk
        payload: dict[str, Any] = {
            "source_path": chunk.source_path,
            "chunk_index": chunk.index,
            "content_hash": chunk.content_hash,
            "start_line": chunk.start_line,
            "end_line": chunk.end_line,
        }
        if token_count is not None:
            payload["token_count"] = token_count
        return cls(id=chunk.point_id, vector=result.vector, payload=payload)


@dataclass(frozen=True, slots=True)
class ChunkTooLarge:
    """Diagnostic for a chunk excluded because it exceeds the token limit."""

    source_path: str
    index: int
    token_count: int
    limit: int

    def describe(self) -> str:
        return (
            f"{self.source_path} chunk #{self.index} has ~{self.token_count} "
            f"tokens (limit {self.limit}); skipped"
        )
