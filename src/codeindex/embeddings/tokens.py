"""Token estimates used to admit chunks into embedding batches.

Counts only need to be safe, not exact: over-estimating merely skips a chunk
that might have fit, while under-estimating gets a request rejected by the
provider. Both counters therefore round up and never raise.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from math import ceil
from typing import Protocol, runtime_checkable

import tiktoken

from codeindex.core.logging import get_logger

__all__ = [
    "DEFAULT_ENCODING",
    "ApproximateTokenCounter",
    "TiktokenCounter",
    "TokenCounter",
    "TokenCounterError",
    "counter_for_tokenizer",
]

DEFAULT_ENCODING = "cl100k_base"

_LOGGER = get_logger(__name__, component="token-counter")


@runtime_checkable
class TokenCounter(Protocol):
    """Anything able to estimate the token length of a text."""

    def count(self, text: str) -> int: ...


class TokenCounterError(RuntimeError):
    """Raised when a named tokenizer cannot be loaded."""


@dataclass(frozen=True, slots=True)
class ApproximateTokenCounter:
    """Byte-length heuristic for models without a published tokenizer.

    Three UTF-8 bytes per token sits below what BPE/SentencePiece
    vocabularies average on source code, so the estimate runs high.
    """

    bytes_per_token: int = 3

    def __post_init__(self) -> None:
        if self.bytes_per_token < 1:
            raise ValueError("bytes_per_token must be >= 1")

    def count(self, text: str) -> int:
        if not text:
            return 0
        size = len(text.encode("utf-8", errors="surrogatepass"))
        return max(1, ceil(size / self.bytes_per_token))


@lru_cache(maxsize=8)
def _load_encoding(name: str) -> tiktoken.Encoding:
    try:
        return tiktoken.get_encoding(name)
    except (KeyError, ValueError) as exc:
        raise TokenCounterError(f"Unknown tiktoken encoding: {name}") from exc


class TiktokenCounter:
    """Exact BPE counts via :mod:`tiktoken` for OpenAI-family models.

    The encoding is resolved lazily on first use. If it cannot be loaded (for
    example when the BPE ranks cannot be downloaded) or encoding a text fails,
    the approximate counter answers instead.
    """

    def __init__(
        self,
        encoding_name: str = DEFAULT_ENCODING,
        *,
        padding: int = 0,
    ) -> None:
        self.encoding_name = encoding_name
        self._padding = max(0, padding)
        self._fallback = ApproximateTokenCounter()
        self._encoding: tiktoken.Encoding | None = None
        self._unavailable = False

    def _resolve(self) -> tiktoken.Encoding | None:
        if self._encoding is not None or self._unavailable:
            return self._encoding
        try:
            self._encoding = _load_encoding(self.encoding_name)
        except (TokenCounterError, OSError, ValueError) as exc:
            self._unavailable = True
            _LOGGER.warning(
                "token-encoder-fallback",
                requested=self.encoding_name,
                reason=str(exc),
            )
        return self._encoding

    def count(self, text: str) -> int:
        if not text:
            return 0
        encoding = self._resolve()
        if encoding is None:
            return self._padding + self._fallback.count(text)
        try:
            tokens = encoding.encode(text, disallowed_special=())
        except (ValueError, UnicodeError):
            return self._padding + self._fallback.count(text)
        return self._padding + len(tokens)


def counter_for_tokenizer(name: str | None) -> TokenCounter:
    """Return the counter matching a model profile's tokenizer field.

    ``None`` selects the approximate counter.

    Example:
        >>> counter_for_tokenizer(None).count("abcdef")
        2
    """

    if name is None:
        return ApproximateTokenCounter()
    return TiktokenCounter(name)
