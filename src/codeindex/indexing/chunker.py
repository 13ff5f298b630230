"""Fixed-window line chunker.

Chunk boundaries depend only on file content and the window settings, so
re-chunking an unchanged file reproduces the same ``(source_path, index)``
identities and therefore the same point ids.
"""

from __future__ import annotations

from dataclasses import dataclass

from codeindex.indexing.hashing import hash_text
from codeindex.models import Chunk

__all__ = ["CHUNKER_VERSION", "LineChunker", "decode_source", "looks_binary"]

CHUNKER_VERSION = "line-window/1"

_BINARY_SNIFF_BYTES = 8_192


def looks_binary(data: bytes) -> bool:
    """Return ``True`` when the head of ``data`` contains a NUL byte."""

    return b"\x00" in data[:_BINARY_SNIFF_BYTES]


def decode_source(data: bytes) -> str:
    # Undecodable bytes become U+FFFD rather than failing the file.
    return data.decode("utf-8-sig", errors="replace")


@dataclass(frozen=True, slots=True)
class LineChunker:
    """Split text into windows of ``chunk_lines`` lines.

    Consecutive windows share ``overlap`` lines. Windows holding only
    whitespace are dropped and do not consume an index.
    """

    chunk_lines: int = 60
    overlap: int = 0

    def __post_init__(self) -> None:
        if self.chunk_lines < 1:
            raise ValueError("chunk_lines must be >= 1")
        if not 0 <= self.overlap < self.chunk_lines:
            raise ValueError("overlap must be >= 0 and < chunk_lines")

    @property
    def version(self) -> str:
        return f"{CHUNKER_VERSION}:{self.chunk_lines}:{self.overlap}"

    def chunk_text(self, source_path: str, text: str) -> tuple[Chunk, ...]:
        lines = text.splitlines(keepends=True)
        step = self.chunk_lines - self.overlap
        chunks: list[Chunk] = []
        start = 0
        while start < len(lines):
            window = lines[start : start + self.chunk_lines]
            body = "".join(window)
            if body.strip():
                chunks.append(
                    Chunk(
                        source_path=source_path,
                        index=len(chunks),
                        text=body,
                        content_hash=hash_text(body, salt=self.version),
                        start_line=start + 1,
                        end_line=start + len(window),
                    )
                )
            if start + self.chunk_lines >= len(lines):
                break
            start += step
        return tuple(chunks)

    def chunk_bytes(self, source_path: str, data: bytes) -> tuple[Chunk, ...]:
        """Chunk raw file bytes; binary content yields no chunks."""

        if looks_binary(data):
            return ()
        return self.chunk_text(source_path, decode_source(data))
