"""Tests for the shared retry loop in :mod:`codeindex.embeddings.base`."""

from __future__ import annotations

import asyncio
import random

import pytest

from codeindex.embeddings import (
    AuthFailedError,
    InvalidResponseShapeError,
    ProviderConfig,
    RateLimitedError,
    RetryPolicy,
    ServiceUnavailableError,
)
from codeindex.embeddings.base import parse_retry_after
from codeindex.models import Chunk, EmbeddingBatch


def _batch(*texts: str) -> EmbeddingBatch:
    return EmbeddingBatch(
        chunks=tuple(
            Chunk(
                source_path="src/app.py",
                index=position,
                text=text,
                content_hash=f"h{position}",
            )
            for position, text in enumerate(texts)
        ),
        token_count=len(texts),
    )


def _rate_limited(retry_after: float | None = None) -> RateLimitedError:
    return RateLimitedError(
        "slow down",
        provider="fake",
        model="fake-embed",
        status_code=429,
        retry_after=retry_after,
    )


def _unavailable() -> ServiceUnavailableError:
    return ServiceUnavailableError(
        "connection refused",
        provider="fake",
        model="fake-embed",
        detail="http://localhost:1",
    )


def test_retry_policy_exponential_schedule_is_capped() -> None:
    policy = RetryPolicy(initial_delay=1.0, max_delay=5.0, jitter_ratio=0.0)

    assert [policy.delay_for(n) for n in range(1, 6)] == [
        1.0,
        2.0,
        4.0,
        5.0,
        5.0,
    ]


def test_retry_policy_jitter_stays_within_twenty_percent() -> None:
    policy = RetryPolicy(initial_delay=1.0, max_delay=60.0)
    rng = random.Random(7)

    delays = [policy.delay_for(3, rng=rng) for _ in range(50)]

    assert all(3.2 <= delay <= 4.8 for delay in delays)
    assert len(set(delays)) > 1


def test_retry_policy_prefers_retry_after_and_caps_it() -> None:
    policy = RetryPolicy(max_delay=10.0)

    assert policy.delay_for(1, retry_after=3.0) == 3.0
    assert policy.delay_for(1, retry_after=120.0) == 10.0


def test_retry_policy_budget_per_kind() -> None:
    policy = RetryPolicy(max_retries=4, service_unavailable_attempts=2)
    auth = AuthFailedError("nope", provider="fake", model="fake-embed")

    assert policy.budget_for(_rate_limited()) == 4
    assert policy.budget_for(_unavailable()) == 2
    assert policy.budget_for(auth) == 1


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, None), ("", None), ("7", 7.0), ("1.5", 1.5), ("nonsense", None)],
)
def test_parse_retry_after_seconds(
    value: str | None,
    expected: float | None,
) -> None:
    assert parse_retry_after(value) == expected


def test_parse_retry_after_http_date_in_past_is_zero() -> None:
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


def test_provider_config_rejects_blank_model() -> None:
    with pytest.raises(ValueError):
        ProviderConfig(
            provider="fake",
            model=" ",
            dimension=8,
            max_tokens_per_item=10,
        )


def test_provider_config_describe_redacts_key(provider_config_factory) -> None:
    config = provider_config_factory(api_key="sk-secret")

    described = config.describe()

    assert described["api_key"] == "***"
    assert "sk-secret" not in str(described)


def test_embed_returns_results_in_input_order(embedder_factory) -> None:
    embedder = embedder_factory()
    batch = _batch("alpha", "beta", "gamma")

    results = asyncio.run(embedder.embed(batch))

    assert [result.chunk.text for result in results] == [
        "alpha",
        "beta",
        "gamma",
    ]
    assert all(len(result.vector) == embedder.dimension for result in results)
    assert embedder.stats["requests"] == 1


def test_rate_limit_recovers_within_budget(embedder_factory) -> None:
    # max_retries is 3: two rate limits then success means three attempts.
    embedder = embedder_factory(script=[_rate_limited(), _rate_limited()])

    results = asyncio.run(embedder.embed(_batch("alpha")))

    assert len(results) == 1
    assert len(embedder.calls) == 3
    assert embedder.stats["attempts"] == 3
    assert embedder.stats["retries"] == 2
    assert embedder.sleeps == [0.01, 0.02]


def test_rate_limit_exhaustion_raises_with_attempts(embedder_factory) -> None:
    embedder = embedder_factory(
        script=[_rate_limited(), _rate_limited(), _rate_limited()]
    )

    with pytest.raises(RateLimitedError) as excinfo:
        asyncio.run(embedder.embed(_batch("alpha")))

    assert excinfo.value.attempts == 3
    assert excinfo.value.status_code == 429
    assert len(embedder.calls) == 3
    assert embedder.stats["failures"] == 1


def test_retry_after_header_drives_delay(embedder_factory) -> None:
    embedder = embedder_factory(script=[_rate_limited(retry_after=0.03)])

    asyncio.run(embedder.embed(_batch("alpha")))

    assert embedder.sleeps == [0.03]


def test_service_unavailable_uses_its_own_budget(embedder_factory) -> None:
    embedder = embedder_factory(script=[_unavailable(), _unavailable()])

    with pytest.raises(ServiceUnavailableError) as excinfo:
        asyncio.run(embedder.embed(_batch("alpha")))

    assert excinfo.value.attempts == 2
    assert excinfo.value.detail == "http://localhost:1"
    assert len(embedder.calls) == 2


def test_budgets_are_tracked_per_kind(embedder_factory) -> None:
    embedder = embedder_factory(
        script=[_unavailable(), _rate_limited(), _rate_limited()]
    )

    asyncio.run(embedder.embed(_batch("alpha")))

    assert len(embedder.calls) == 4


def test_auth_failure_is_not_retried(embedder_factory) -> None:
    error = AuthFailedError(
        "invalid key",
        provider="fake",
        model="fake-embed",
        status_code=401,
    )
    embedder = embedder_factory(script=[error])

    with pytest.raises(AuthFailedError) as excinfo:
        asyncio.run(embedder.embed(_batch("alpha")))

    assert excinfo.value.attempts == 1
    assert embedder.sleeps == []
    assert AuthFailedError.fatal is True


@pytest.mark.parametrize(
    "response",
    [
        [],
        [[0.1] * 8, [0.2] * 8],
        [[0.1] * 3],
        [["not", "numbers"]],
    ],
)
def test_malformed_vectors_raise_invalid_shape(
    embedder_factory,
    response,
) -> None:
    embedder = embedder_factory(script=[response])

    with pytest.raises(InvalidResponseShapeError):
        asyncio.run(embedder.embed(_batch("alpha")))

    assert len(embedder.calls) == 1
