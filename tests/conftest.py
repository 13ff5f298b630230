"""Shared pytest fixtures: in-memory store, scripted embedder, workspaces."""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import pytest

from codeindex.core.config import IndexerConfig, load_config
from codeindex.embeddings import BaseEmbedder, ProviderConfig, RetryPolicy
from codeindex.embeddings.tokens import ApproximateTokenCounter
from codeindex.factory import IndexingServices
from codeindex.models import Chunk, VectorPoint
from codeindex.vectorstore.errors import StoreError

FAKE_DIMENSION = 8


def vector_for(text: str, dimension: int = FAKE_DIMENSION) -> list[float]:
    """Deterministic pseudo-embedding derived from ``text``."""

    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [byte / 255.0 for byte in digest[:dimension]]


class InMemoryStore:
    """Vector store double keeping points in a dict."""

    def __init__(self, *, dimension: int | None = None) -> None:
        self.points: dict[str, VectorPoint] = {}
        self.dimension = dimension
        self.calls: list[tuple[str, Any]] = []
        self.fail_upsert_for: set[str] = set()
        self.fail_delete_for: set[str] = set()
        self.fail_flush = False
        self.flushes = 0
        self.closed = False

    @property
    def address(self) -> str:
        return "memory://test"

    async def ensure_collection(self, dimension: int) -> None:
        self.calls.append(("ensure_collection", dimension))
        if self.dimension is None:
            self.dimension = dimension

    async def upsert(self, points: Sequence[VectorPoint]) -> None:
        self.calls.append(("upsert", tuple(point.id for point in points)))
        for point in points:
            if point.source_path in self.fail_upsert_for:
                raise StoreError(
                    f"upsert rejected for {point.source_path}",
                    address=self.address,
                    operation="upsert",
                )
        for point in points:
            self.points[point.id] = point

    async def delete_by_source(self, source_path: str) -> None:
        self.calls.append(("delete_by_source", source_path))
        if source_path in self.fail_delete_for:
            raise StoreError(
                f"delete rejected for {source_path}",
                address=self.address,
                operation="delete_by_source",
            )
        self.points = {
            key: point
            for key, point in self.points.items()
            if point.source_path != source_path
        }

    async def count(self, source_path: str | None = None) -> int:
        if source_path is None:
            return len(self.points)
        return sum(
            1
            for point in self.points.values()
            if point.source_path == source_path
        )

    async def fetch(self, point_ids: Sequence[str]) -> tuple[VectorPoint, ...]:
        return tuple(
            self.points[point_id]
            for point_id in point_ids
            if point_id in self.points
        )

    async def flush(self) -> None:
        self.calls.append(("flush", None))
        if self.fail_flush:
            raise StoreError(
                "flush rejected",
                address=self.address,
                operation="flush",
            )
        self.flushes += 1

    async def aclose(self) -> None:
        self.closed = True

    def paths(self) -> set[str]:
        return {point.source_path for point in self.points.values()}


class FakeEmbedder(BaseEmbedder):
    """Embedder whose transport call follows a script.

    Each script entry is consumed by one request: an exception is raised,
    a sequence of vectors is returned as-is and ``None`` falls through to
    deterministic vectors.
    """

    provider_name = "fake"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        script: Iterable[Any] = (),
        **kwargs: Any,
    ) -> None:
        self.sleeps: list[float] = []
        kwargs.setdefault("sleep", self._record_sleep)
        super().__init__(config, **kwargs)
        self.script = list(script)
        self.calls: list[tuple[str, ...]] = []
        self.closed = False

    async def _record_sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    async def _request(
        self,
        texts: Sequence[str],
    ) -> Sequence[Sequence[float]]:
        self.calls.append(tuple(texts))
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, BaseException):
                raise step
            if step is not None:
                return step
        return [vector_for(text, self.dimension) for text in texts]

    async def aclose(self) -> None:
        self.closed = True


def make_provider_config(**overrides: Any) -> ProviderConfig:
    values: dict[str, Any] = {
        "provider": "fake",
        "model": "fake-embed",
        "dimension": FAKE_DIMENSION,
        "max_tokens_per_item": 8192,
        "retry": RetryPolicy(
            max_retries=3,
            service_unavailable_attempts=2,
            initial_delay=0.01,
            max_delay=0.05,
            jitter_ratio=0.0,
        ),
    }
    values.update(overrides)
    return ProviderConfig(**values)


@pytest.fixture
def provider_config() -> ProviderConfig:
    return make_provider_config()


@pytest.fixture
def provider_config_factory() -> Callable[..., ProviderConfig]:
    return make_provider_config


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def embedder_factory(
    provider_config: ProviderConfig,
) -> Callable[..., FakeEmbedder]:
    """Return a builder for :class:`FakeEmbedder` instances."""

    def _build(
        config: ProviderConfig | None = None,
        *,
        script: Iterable[Any] = (),
        **kwargs: Any,
    ) -> FakeEmbedder:
        return FakeEmbedder(config or provider_config, script=script, **kwargs)

    return _build


@pytest.fixture
def make_chunk() -> Callable[..., Chunk]:
    def _make(path: str, index: int, text: str | None = None) -> Chunk:
        body = text if text is not None else f"{path} chunk {index}"
        return Chunk(
            source_path=path,
            index=index,
            text=body,
            content_hash=hashlib.sha256(body.encode()).hexdigest(),
        )

    return _make


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def write_files() -> Callable[[Path, Mapping[str, str | bytes]], None]:
    def _write(root: Path, files: Mapping[str, str | bytes]) -> None:
        for relative, content in files.items():
            target = root / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                target.write_bytes(content)
            else:
                target.write_text(content, encoding="utf-8")

    return _write


@pytest.fixture
def indexer_config_factory() -> Callable[..., IndexerConfig]:
    """Build configs from packaged defaults plus overrides, ignoring env."""

    def _build(**sections: Any) -> IndexerConfig:
        layer: dict[str, Any] = {
            "embedder": {"model": "fake-embed", "dimension": FAKE_DIMENSION},
        }
        for key, value in sections.items():
            if isinstance(value, Mapping) and isinstance(
                layer.get(key),
                Mapping,
            ):
                layer[key] = {**layer[key], **value}
            else:
                layer[key] = value
        return load_config(cli_overrides=layer, environ={})

    return _build


@pytest.fixture
def services_factory(
    provider_config: ProviderConfig,
) -> Callable[..., IndexingServices]:
    def _build(
        embedder: BaseEmbedder,
        store: InMemoryStore,
        *,
        config: ProviderConfig | None = None,
    ) -> IndexingServices:
        return IndexingServices(
            embedder=embedder,
            store=store,
            provider_config=config or provider_config,
            token_counter=ApproximateTokenCounter(),
        )

    return _build
