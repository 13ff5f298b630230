"""Tests for :mod:`codeindex.vectorstore.faiss_store`."""

from __future__ import annotations

import asyncio
import gc
import json
from pathlib import Path

import pytest

from codeindex.models import VectorPoint, point_id_for
from codeindex.vectorstore.errors import (
    CollectionDimensionMismatchError,
    StoreError,
)
from codeindex.vectorstore.faiss_store import FaissVectorStore, faiss_id_for


def _point(path: str, index: int, vector: list[float]) -> VectorPoint:
    return VectorPoint(
        id=point_id_for(path, index),
        vector=tuple(vector),
        payload={"source_path": path, "chunk_index": index},
    )


def test_faiss_id_is_stable_and_non_negative() -> None:
    point_id = point_id_for("src/app.py", 3)

    assert faiss_id_for(point_id) == faiss_id_for(point_id)
    assert 0 <= faiss_id_for(point_id) < 2**63
    other = point_id_for("src/app.py", 4)
    assert faiss_id_for(point_id) != faiss_id_for(other)


def test_faiss_store_round_trip(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = FaissVectorStore(path=tmp_path, collection="code")
        await store.ensure_collection(3)
        await store.upsert(
            [
                _point("a.py", 0, [1.0, 0.0, 0.0]),
                _point("b.py", 0, [0.0, 0.5, 0.5]),
            ]
        )

        (point,) = await store.fetch([point_id_for("b.py", 0)])
        assert point.id == point_id_for("b.py", 0)
        assert point.vector == pytest.approx((0.0, 0.5, 0.5))
        assert point.payload["source_path"] == "b.py"
        assert await store.fetch([point_id_for("c.py", 0)]) == ()

    asyncio.run(scenario())


def test_faiss_store_persists_and_reloads(tmp_path: Path) -> None:
    async def write() -> None:
        store = FaissVectorStore(path=tmp_path, collection="code")
        await store.ensure_collection(2)
        await store.upsert(
            [_point("a.py", 0, [1.0, 0.0]), _point("a.py", 1, [0.0, 1.0])]
        )
        await store.aclose()

    async def read() -> tuple[int, int]:
        store = FaissVectorStore(path=tmp_path, collection="code")
        await store.ensure_collection(2)
        return await store.count(), await store.count("a.py")

    asyncio.run(write())

    assert (tmp_path / "code.faiss").exists()
    sidecar = json.loads(
        (tmp_path / "code.faiss.meta.json").read_text(encoding="utf-8")
    )
    assert sidecar["dimension"] == 2
    assert len(sidecar["points"]) == 2
    assert asyncio.run(read()) == (2, 2)


def test_reopened_store_keeps_dimension_and_vectors(tmp_path: Path) -> None:
    async def write() -> None:
        store = FaissVectorStore(path=tmp_path, collection="code")
        await store.ensure_collection(3)
        await store.upsert([_point("a.py", 0, [0.0, 0.25, 0.75])])
        await store.aclose()

    async def reopen() -> tuple[int | None, tuple[VectorPoint, ...]]:
        store = FaissVectorStore(path=tmp_path, collection="code")
        await store.ensure_collection(3)
        gc.collect()
        # A second pass over the same handle must still see dimension 3.
        await store.ensure_collection(3)
        await store.upsert([_point("b.py", 0, [1.0, 0.0, 0.0])])
        return store.dimension, await store.fetch([point_id_for("a.py", 0)])

    asyncio.run(write())
    dimension, (point,) = asyncio.run(reopen())

    assert dimension == 3
    assert point.vector == pytest.approx((0.0, 0.25, 0.75))


def test_sidecar_dimension_must_match_index(tmp_path: Path) -> None:
    asyncio.run(
        FaissVectorStore(path=tmp_path, collection="c").ensure_collection(2)
    )
    sidecar_path = tmp_path / "c.faiss.meta.json"
    payload = json.loads(sidecar_path.read_text(encoding="utf-8"))
    payload["dimension"] = 5
    sidecar_path.write_text(json.dumps(payload), encoding="utf-8")

    reopened = FaissVectorStore(path=tmp_path, collection="c")
    with pytest.raises(StoreError) as excinfo:
        asyncio.run(reopened.ensure_collection(2))

    assert "sidecar records 5" in str(excinfo.value)


def test_mutations_reach_disk_only_on_flush(tmp_path: Path) -> None:
    store = FaissVectorStore(path=tmp_path, collection="code")
    sidecar_path = tmp_path / "code.faiss.meta.json"

    def on_disk() -> int:
        payload = json.loads(sidecar_path.read_text(encoding="utf-8"))
        return len(payload["points"])

    async def scenario() -> list[int]:
        seen = []
        await store.ensure_collection(2)
        for index in range(3):
            await store.upsert([_point("a.py", index, [1.0, 0.0])])
        seen.append(on_disk())
        assert store.dirty
        await store.flush()
        seen.append(on_disk())
        await store.delete_by_source("a.py")
        seen.append(on_disk())
        await store.aclose()
        seen.append(on_disk())
        return seen

    assert asyncio.run(scenario()) == [0, 3, 3, 0]
    assert not store.dirty


def test_faiss_store_upsert_overwrites_and_delete_by_source(
    tmp_path: Path,
) -> None:
    async def scenario() -> None:
        store = FaissVectorStore(path=tmp_path, collection="code")
        await store.ensure_collection(2)
        await store.upsert([_point("a.py", 0, [1.0, 0.0])])
        await store.upsert(
            [_point("a.py", 0, [0.0, 1.0]), _point("b.py", 0, [1.0, 1.0])]
        )
        assert await store.count() == 2
        (point,) = await store.fetch([point_id_for("a.py", 0)])
        assert point.vector == pytest.approx((0.0, 1.0))

        await store.delete_by_source("a.py")
        await store.delete_by_source("never-indexed.py")
        assert await store.count("a.py") == 0
        assert await store.count() == 1

    asyncio.run(scenario())


def test_faiss_store_dimension_mismatch(tmp_path: Path) -> None:
    async def scenario() -> None:
        first = FaissVectorStore(path=tmp_path, collection="c")
        await first.ensure_collection(4)
        reopened = FaissVectorStore(path=tmp_path, collection="c")
        with pytest.raises(CollectionDimensionMismatchError) as excinfo:
            await reopened.ensure_collection(8)
        assert excinfo.value.field == "embedder.dimension"

    asyncio.run(scenario())


def test_faiss_store_detects_checksum_mismatch(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = FaissVectorStore(path=tmp_path, collection="c")
        await store.ensure_collection(2)
        await store.upsert([_point("a.py", 0, [1.0, 0.0])])
        await store.flush()

    asyncio.run(scenario())
    sidecar_path = tmp_path / "c.faiss.meta.json"
    payload = json.loads(sidecar_path.read_text(encoding="utf-8"))
    payload["checksum"] = "0" * 64
    sidecar_path.write_text(json.dumps(payload), encoding="utf-8")

    reopened = FaissVectorStore(path=tmp_path, collection="c")
    with pytest.raises(StoreError) as excinfo:
        asyncio.run(reopened.ensure_collection(2))

    assert "Checksum mismatch" in str(excinfo.value)


def test_faiss_store_requires_collection_first(tmp_path: Path) -> None:
    store = FaissVectorStore(path=tmp_path, collection="c")

    with pytest.raises(StoreError):
        asyncio.run(store.upsert([_point("a.py", 0, [1.0])]))


def test_faiss_store_rejects_wrong_vector_length(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = FaissVectorStore(path=tmp_path, collection="c")
        await store.ensure_collection(3)
        await store.upsert([_point("a.py", 0, [1.0, 0.0])])

    with pytest.raises(StoreError):
        asyncio.run(scenario())
