"""Local vector store built on a FAISS ``IndexIDMap2`` plus a JSON sidecar.

FAISS only understands int64 ids and keeps no payloads, so the sidecar maps
each int id to its point id and payload. Mutations stay in memory until
:meth:`FaissVectorStore.flush`, which rewrites both artifacts atomically. The
sidecar records the SHA-256 of the index bytes and a mismatch on load is
reported rather than repaired.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import faiss
import numpy as np

from codeindex.core.logging import Logger, get_logger
from codeindex.models import VectorPoint
from codeindex.vectorstore.errors import (
    CollectionDimensionMismatchError,
    StoreError,
)

__all__ = ["FaissVectorStore", "faiss_id_for"]

SIDECAR_VERSION = 1


def faiss_id_for(point_id: str) -> int:
    """Fold a UUID point id into a non-negative int64 FAISS id.

    Example:
        >>> faiss_id_for("6f1c1d52-5f0e-4d38-9a3e-0b7c6c1f2a91") >= 0
        True
    """

    return uuid.UUID(point_id).int >> 65


class FaissVectorStore:
    """Keep vectors for one collection under a local directory."""

    def __init__(
        self,
        *,
        path: Path,
        collection: str,
        logger: Logger | None = None,
    ) -> None:
        self.directory = Path(path)
        self.collection = collection
        base_logger = logger or get_logger(__name__)
        self.logger = base_logger.bind(
            component="vector-store",
            store="faiss",
            collection=collection,
        )
        self._index: faiss.IndexIDMap2 | None = None
        self._points: dict[int, dict[str, Any]] = {}
        self._dirty = False
        self._lock = asyncio.Lock()

    @property
    def index_path(self) -> Path:
        return self.directory / f"{self.collection}.faiss"

    @property
    def sidecar_path(self) -> Path:
        return self.index_path.with_name(f"{self.index_path.name}.meta.json")

    @property
    def address(self) -> str:
        return str(self.index_path)

    @property
    def dimension(self) -> int | None:
        return None if self._index is None else int(self._index.d)

    @property
    def dirty(self) -> bool:
        """Whether in-memory changes have not reached disk yet."""

        return self._dirty

    def _require_index(self, operation: str) -> faiss.IndexIDMap2:
        if self._index is None:
            raise StoreError(
                f"ensure_collection must run before {operation}.",
                address=self.address,
                operation=operation,
            )
        return self._index

    async def ensure_collection(self, dimension: int) -> None:
        async with self._lock:
            if self._index is None:
                if self.index_path.exists():
                    await asyncio.to_thread(self._load)
                else:
                    self._index = faiss.IndexIDMap2(
                        faiss.IndexFlatIP(dimension)
                    )
                    self._points = {}
                    await asyncio.to_thread(self._persist, "ensure_collection")
                    self.logger.info("collection-created", dimension=dimension)
            index = self._require_index("ensure_collection")
            if index.d != dimension:
                raise CollectionDimensionMismatchError(
                    collection=self.collection,
                    expected=dimension,
                    actual=int(index.d),
                    address=str(self.directory),
                )

    async def upsert(self, points: Sequence[VectorPoint]) -> None:
        if not points:
            return
        async with self._lock:
            index = self._require_index("upsert")
            # Later duplicates win, matching overwrite-by-id semantics.
            latest = {point.id: point for point in points}
            ids = [faiss_id_for(point_id) for point_id in latest]
            vectors = _vectors_to_array(
                [point.vector for point in latest.values()],
                dim=index.d,
                address=self.address,
            )
            existing = [value for value in ids if value in self._points]
            if existing:
                index.remove_ids(_ids_to_array(existing))
            index.add_with_ids(vectors, _ids_to_array(ids))
            for faiss_id, point in zip(ids, latest.values()):
                self._points[faiss_id] = {
                    "id": point.id,
                    "payload": dict(point.payload),
                }
            self._dirty = True

    async def delete_by_source(self, source_path: str) -> None:
        async with self._lock:
            index = self._require_index("delete_by_source")
            doomed = [
                faiss_id
                for faiss_id, entry in self._points.items()
                if entry["payload"].get("source_path") == source_path
            ]
            if not doomed:
                return
            index.remove_ids(_ids_to_array(doomed))
            for faiss_id in doomed:
                del self._points[faiss_id]
            self._dirty = True

    async def count(self, source_path: str | None = None) -> int:
        self._require_index("count")
        if source_path is None:
            return len(self._points)
        return sum(
            1
            for entry in self._points.values()
            if entry["payload"].get("source_path") == source_path
        )

    async def fetch(self, point_ids: Sequence[str]) -> tuple[VectorPoint, ...]:
        index = self._require_index("fetch")
        found: list[VectorPoint] = []
        for point_id in point_ids:
            faiss_id = faiss_id_for(point_id)
            entry = self._points.get(faiss_id)
            if entry is None:
                continue
            vector = index.reconstruct(faiss_id)
            found.append(
                VectorPoint(
                    id=entry["id"],
                    vector=tuple(float(value) for value in vector),
                    payload=dict(entry["payload"]),
                )
            )
        return tuple(found)

    async def flush(self) -> None:
        """Write pending changes to disk; a clean store writes nothing."""

        async with self._lock:
            if not self._dirty:
                return
            await asyncio.to_thread(self._persist, "flush")
            self.logger.debug("store-flushed", points=len(self._points))

    async def aclose(self) -> None:
        await self.flush()

    # ------------------------------------------------------------------#
    # Persistence
    # ------------------------------------------------------------------#
    def _persist(self, operation: str) -> None:
        index = self._require_index(operation)
        index_bytes = faiss.serialize_index(index).tobytes()
        sidecar = {
            "version": SIDECAR_VERSION,
            "collection": self.collection,
            "dimension": int(index.d),
            "checksum": hashlib.sha256(index_bytes).hexdigest(),
            "points": {
                str(faiss_id): entry
                for faiss_id, entry in self._points.items()
            },
        }
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            _atomic_write_bytes(self.index_path, index_bytes)
            _atomic_write_bytes(
                self.sidecar_path,
                (json.dumps(sidecar, ensure_ascii=False) + "\n").encode(),
            )
        except OSError as exc:
            raise StoreError(
                f"Failed to persist FAISS store under {self.directory}: {exc}",
                address=self.address,
                operation=operation,
                cause=exc,
            ) from exc
        self._dirty = False

    def _load(self) -> None:
        try:
            index_bytes = self.index_path.read_bytes()
            payload = json.loads(self.sidecar_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreError(
                f"Failed loading FAISS store from {self.directory}: {exc}",
                address=self.address,
                operation="ensure_collection",
                cause=exc,
            ) from exc

        digest = hashlib.sha256(index_bytes).hexdigest()
        if not isinstance(payload, Mapping):
            payload = {}
        if payload.get("checksum") != digest:
            raise StoreError(
                (
                    "Checksum mismatch between FAISS index and sidecar at "
                    f"{self.index_path}; delete both files to rebuild."
                ),
                address=self.address,
                operation="ensure_collection",
            )

        buffer = np.frombuffer(index_bytes, dtype="uint8")
        index = faiss.deserialize_index(buffer)
        if not isinstance(index, faiss.IndexIDMap2):
            raise StoreError(
                (
                    f"FAISS index at {self.index_path} is not an IDMap2 "
                    "index; delete both files to rebuild."
                ),
                address=self.address,
                operation="ensure_collection",
            )
        if payload.get("dimension") != int(index.d):
            raise StoreError(
                (
                    f"FAISS index at {self.index_path} has dimension "
                    f"{int(index.d)} but the sidecar records "
                    f"{payload.get('dimension')}."
                ),
                address=self.address,
                operation="ensure_collection",
            )
        points = payload.get("points") or {}
        self._points = {int(key): dict(value) for key, value in points.items()}
        if index.ntotal != len(self._points):
            raise StoreError(
                (
                    f"FAISS index at {self.index_path} holds "
                    f"{index.ntotal} vectors but the sidecar lists "
                    f"{len(self._points)} points."
                ),
                address=self.address,
                operation="ensure_collection",
            )
        self._index = index
        self._dirty = False


def _ids_to_array(ids: Iterable[int]) -> np.ndarray:
    return np.fromiter((int(value) for value in ids), dtype="int64")


def _vectors_to_array(
    vectors: Sequence[Sequence[float]],
    *,
    dim: int,
    address: str,
) -> np.ndarray:
    array = np.asarray(vectors, dtype="float32")
    if array.ndim != 2 or array.shape[1] != dim:
        raise StoreError(
            f"Vector dimensionality mismatch: expected {dim}, "
            f"got shape {array.shape}",
            address=address,
            operation="upsert",
        )
    return np.ascontiguousarray(array)


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            prefix=".faiss-",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(data)
            temp_path = Path(handle.name)
        os.replace(temp_path, path)
    except OSError:
        if temp_path is not None:
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise
