"""Tests for :mod:`codeindex.embeddings.tokens`."""

from __future__ import annotations

import pytest

from codeindex.embeddings import tokens as tokens_module
from codeindex.embeddings.tokens import (
    ApproximateTokenCounter,
    TiktokenCounter,
    TokenCounter,
    TokenCounterError,
    counter_for_tokenizer,
)


class _FakeEncoding:
    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []

    def encode(self, text: str, *, disallowed_special=()) -> list[int]:
        self.calls.append((text, disallowed_special))
        return list(range(len(text.split())))


def test_approximate_counter_rounds_bytes_up() -> None:
    counter = ApproximateTokenCounter()

    assert counter.count("") == 0
    assert counter.count("a") == 1
    assert counter.count("abc") == 1
    assert counter.count("abcd") == 2
    # Two bytes per character in UTF-8.
    assert counter.count("éé") == 2


def test_approximate_counter_is_monotonic_in_length() -> None:
    counter = ApproximateTokenCounter()
    counts = [counter.count("x" * size) for size in range(0, 200, 7)]

    assert counts == sorted(counts)
    assert all(value >= 0 for value in counts)


def test_approximate_counter_rejects_zero_ratio() -> None:
    with pytest.raises(ValueError):
        ApproximateTokenCounter(bytes_per_token=0)


def test_counters_satisfy_protocol() -> None:
    assert isinstance(ApproximateTokenCounter(), TokenCounter)
    assert isinstance(TiktokenCounter(), TokenCounter)


def test_tiktoken_counter_encodes_special_tokens_as_text(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    encoding = _FakeEncoding()
    monkeypatch.setattr(tokens_module, "_load_encoding", lambda name: encoding)
    counter = TiktokenCounter("cl100k_base", padding=2)

    assert counter.count("alpha <|endoftext|> beta") == 3 + 2
    assert encoding.calls == [("alpha <|endoftext|> beta", ())]
    assert counter.count("") == 0


def test_tiktoken_counter_falls_back_when_encoding_missing(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    attempts: list[str] = []

    def _fail(name: str):
        attempts.append(name)
        raise TokenCounterError(f"Unknown tiktoken encoding: {name}")

    monkeypatch.setattr(tokens_module, "_load_encoding", _fail)
    counter = TiktokenCounter("missing-encoding")

    assert counter.count("abcdef") == ApproximateTokenCounter().count("abcdef")
    assert counter.count("abcdefghi") == 3
    # The failed lookup is not retried for every text.
    assert attempts == ["missing-encoding"]


def test_counter_for_tokenizer_selects_implementation() -> None:
    assert isinstance(counter_for_tokenizer(None), ApproximateTokenCounter)
    counter = counter_for_tokenizer("cl100k_base")
    assert isinstance(counter, TiktokenCounter)
    assert counter.encoding_name == "cl100k_base"
