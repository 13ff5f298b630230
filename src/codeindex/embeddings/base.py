"""Embedder contract, resolved provider configuration and the retry loop."""

from __future__ import annotations

import abc
import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, ClassVar, Mapping, Protocol, Sequence

from codeindex.core.logging import Logger, get_logger
from codeindex.embeddings.errors import (
    EmbedError,
    EmbedErrorKind,
    InvalidResponseShapeError,
    RateLimitedError,
    ServiceUnavailableError,
)
from codeindex.embeddings.tokens import TokenCounter, counter_for_tokenizer
from codeindex.models import EmbeddingBatch, EmbeddingResult, EmbeddingVector

__all__ = [
    "BaseEmbedder",
    "Embedder",
    "ProviderConfig",
    "RetryPolicy",
    "parse_retry_after",
]

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempt budgets and backoff shape shared by every embedder.

    Budgets count total attempts per error kind: ``max_retries`` for rate
    limits and ``service_unavailable_attempts`` for transport failures. Every
    other kind is attempted once.
    """

    max_retries: int = 5
    service_unavailable_attempts: int = 2
    initial_delay: float = 0.5
    max_delay: float = 30.0
    jitter_ratio: float = 0.2

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.service_unavailable_attempts < 1:
            raise ValueError("service_unavailable_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay <= 0:
            raise ValueError("retry delays must be positive")
        if not 0 <= self.jitter_ratio < 1:
            raise ValueError("jitter_ratio must be within [0, 1)")

    def budget_for(self, error: EmbedError) -> int:
        if isinstance(error, RateLimitedError):
            return self.max_retries
        if isinstance(error, ServiceUnavailableError):
            return self.service_unavailable_attempts
        return 1

    def delay_for(
        self,
        attempt: int,
        *,
        retry_after: float | None = None,
        rng: random.Random | None = None,
    ) -> float:
        """Return the sleep before retrying after failed ``attempt``.

        A provider-supplied ``retry_after`` wins over the exponential
        schedule; both are capped at ``max_delay``.

        Example:
            >>> RetryPolicy(jitter_ratio=0).delay_for(3)
            2.0
            >>> RetryPolicy().delay_for(1, retry_after=4)
            4.0
        """

        if retry_after is not None:
            return round(min(max(retry_after, 0.0), self.max_delay), 2)
        base = self.initial_delay * (2 ** max(attempt - 1, 0))
        base = min(base, self.max_delay)
        if self.jitter_ratio:
            source = rng or random.Random()
            base *= 1.0 + source.uniform(-self.jitter_ratio, self.jitter_ratio)
        return round(min(base, self.max_delay), 2)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given as seconds or an HTTP date."""

    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0.0, (moment - datetime.now(timezone.utc)).total_seconds())


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """Immutable provider settings resolved once per indexing session."""

    provider: str
    model: str
    dimension: int
    max_tokens_per_item: int
    api_key: str | None = None
    base_url: str | None = None
    timeout: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    send_dimensions: bool = False
    tokenizer: str | None = None

    def __post_init__(self) -> None:
        if not self.model.strip():
            raise ValueError("model cannot be blank")
        if self.dimension < 1:
            raise ValueError("dimension must be >= 1")
        if self.max_tokens_per_item < 1:
            raise ValueError("max_tokens_per_item must be >= 1")

    def token_counter(self) -> TokenCounter:
        return counter_for_tokenizer(self.tokenizer)

    def describe(self) -> dict[str, object]:
        """Return loggable settings with the credential redacted."""

        return {
            "provider": self.provider,
            "model": self.model,
            "dimension": self.dimension,
            "max_tokens_per_item": self.max_tokens_per_item,
            "base_url": self.base_url,
            "api_key": "***" if self.api_key else None,
            "max_retries": self.retry.max_retries,
        }


class Embedder(Protocol):
    """Capability every embedding provider variant satisfies."""

    config: ProviderConfig

    @property
    def provider(self) -> str: ...

    @property
    def model(self) -> str: ...

    @property
    def dimension(self) -> int: ...

    async def embed(
        self,
        batch: EmbeddingBatch,
    ) -> tuple[EmbeddingResult, ...]:
        """Return one vector per chunk of ``batch`` in input order."""

    async def aclose(self) -> None:
        """Release network resources held by the embedder."""


class BaseEmbedder(abc.ABC):
    """Shared retry, validation and bookkeeping for embedder variants.

    Subclasses implement :meth:`_request`, performing a single call and
    translating transport failures into :class:`EmbedError` subclasses. This
    class owns the whole retry policy; callers never retry a failed batch.
    """

    provider_name: ClassVar[str] = "unknown"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        logger: Logger | None = None,
        sleep: Sleep = asyncio.sleep,
        now: Callable[[], float] = time.perf_counter,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        base_logger = logger or get_logger(__name__)
        self.logger = base_logger.bind(
            component="embedder",
            provider=config.provider,
            model=config.model,
        )
        self._sleep = sleep
        self._now = now
        self._rng = rng or random.Random()
        self._stats = {
            "requests": 0,
            "attempts": 0,
            "retries": 0,
            "failures": 0,
        }

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def dimension(self) -> int:
        return self.config.dimension

    @property
    def stats(self) -> Mapping[str, int]:
        """Return counters captured during the embedder lifetime."""

        return dict(self._stats)

    async def embed(
        self,
        batch: EmbeddingBatch,
    ) -> tuple[EmbeddingResult, ...]:
        vectors = await self._invoke_with_retries(batch)
        return tuple(
            EmbeddingResult(chunk=chunk, vector=vector)
            for chunk, vector in zip(batch.chunks, vectors)
        )

    async def aclose(self) -> None:
        return None

    @abc.abstractmethod
    async def _request(
        self,
        texts: Sequence[str],
    ) -> Sequence[Sequence[float]]:
        """Perform one provider call for ``texts``."""

    def _error(
        self,
        error_type: type[EmbedError],
        message: str,
        **context: object,
    ) -> EmbedError:
        return error_type(
            message,
            provider=self.provider,
            model=self.model,
            **context,
        )

    def _validate_vectors(
        self,
        raw: Sequence[Sequence[float]] | None,
        *,
        expected: int,
    ) -> tuple[EmbeddingVector, ...]:
        if raw is None or len(raw) != expected:
            got = "none" if raw is None else str(len(raw))
            raise self._error(
                InvalidResponseShapeError,
                f"Expected {expected} embeddings from {self.provider}, "
                f"got {got}.",
            )
        vectors: list[EmbeddingVector] = []
        for position, item in enumerate(raw):
            try:
                vector = tuple(float(value) for value in item)
            except (TypeError, ValueError) as exc:
                raise self._error(
                    InvalidResponseShapeError,
                    f"Embedding #{position} is not a numeric array.",
                ) from exc
            if len(vector) != self.dimension:
                raise self._error(
                    InvalidResponseShapeError,
                    f"Embedding #{position} has dimension {len(vector)}, "
                    f"expected {self.dimension}.",
                    detail=f"position={position}",
                )
            vectors.append(vector)
        return tuple(vectors)

    async def _invoke_with_retries(
        self,
        batch: EmbeddingBatch,
    ) -> tuple[EmbeddingVector, ...]:
        texts = list(batch.texts)
        policy = self.config.retry
        per_kind: dict[EmbedErrorKind, int] = {}
        attempts = 0

        while True:
            attempts += 1
            self._stats["attempts"] += 1
            start = self._now()
            try:
                raw = await self._request(texts)
                vectors = self._validate_vectors(raw, expected=len(texts))
            except EmbedError as error:
                seen = per_kind.get(error.kind, 0) + 1
                per_kind[error.kind] = seen
                error.attempts = attempts
                if seen >= policy.budget_for(error):
                    self._stats["failures"] += 1
                    self.logger.warning(
                        "embed-failed",
                        batch=batch.sequence,
                        batch_size=len(texts),
                        **error.context(),
                    )
                    raise

                delay = policy.delay_for(
                    seen,
                    retry_after=error.retry_after,
                    rng=self._rng,
                )
                self.logger.warning(
                    "embed-retry",
                    batch=batch.sequence,
                    kind=error.kind.value,
                    attempt=attempts,
                    max_attempts=policy.budget_for(error),
                    retry_delay=delay,
                    status_code=error.status_code,
                )
                self._stats["retries"] += 1
                await self._sleep(delay)
                continue

            self._stats["requests"] += 1
            self.logger.debug(
                "embed-request",
                batch=batch.sequence,
                batch_size=len(texts),
                token_count=batch.token_count,
                latency=round(self._now() - start, 4),
                attempts=attempts,
                recovered=attempts > 1,
            )
            return vectors
