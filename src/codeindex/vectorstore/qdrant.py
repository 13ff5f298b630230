"""Qdrant-backed vector store client."""

from __future__ import annotations

import math
from typing import Any, Sequence

import httpx
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import (
    ResponseHandlingException,
    UnexpectedResponse,
)
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from codeindex.core.logging import Logger, get_logger
from codeindex.models import VectorPoint
from codeindex.vectorstore.errors import (
    CollectionDimensionMismatchError,
    StoreConnectionError,
    StoreError,
)

__all__ = ["QdrantVectorStore", "client_timeout"]

SOURCE_PATH_KEY = "source_path"


def client_timeout(seconds: float) -> int:
    """Round a timeout up to whole seconds, the unit the client accepts."""

    return max(1, math.ceil(seconds))


def _source_filter(source_path: str) -> Filter:
    return Filter(
        must=[
            FieldCondition(
                key=SOURCE_PATH_KEY,
                match=MatchValue(value=source_path),
            )
        ]
    )


class QdrantVectorStore:
    """Store points in a Qdrant collection using cosine distance."""

    def __init__(
        self,
        *,
        url: str,
        collection: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        logger: Logger | None = None,
        client: AsyncQdrantClient | None = None,
    ) -> None:
        self.url = url
        self.collection = collection
        base_logger = logger or get_logger(__name__)
        self.logger = base_logger.bind(
            component="vector-store",
            store="qdrant",
            collection=collection,
        )
        self._owns_client = client is None
        self._client = client or AsyncQdrantClient(
            url=url,
            api_key=api_key,
            timeout=client_timeout(timeout),
        )

    @property
    def address(self) -> str:
        return f"{self.url} (collection {self.collection!r})"

    def _wrap(self, exc: Exception, *, operation: str) -> StoreError:
        if isinstance(exc, UnexpectedResponse):
            status = exc.status_code
            return StoreError(
                (
                    f"Qdrant at {self.address} rejected {operation} "
                    f"with HTTP {status}: {exc}"
                ),
                address=self.address,
                operation=operation,
                cause=exc,
            )
        return StoreConnectionError(
            f"Unable to reach Qdrant at {self.address} during {operation}: "
            f"{exc}",
            address=self.address,
            operation=operation,
            cause=exc,
        )

    async def _call(self, operation: str, coro: Any) -> Any:
        try:
            return await coro
        except (
            UnexpectedResponse,
            ResponseHandlingException,
            httpx.HTTPError,
            OSError,
        ) as exc:
            raise self._wrap(exc, operation=operation) from exc

    async def ensure_collection(self, dimension: int) -> None:
        exists = await self._call(
            "ensure_collection",
            self._client.collection_exists(self.collection),
        )
        if exists:
            info = await self._call(
                "ensure_collection",
                self._client.get_collection(self.collection),
            )
            vectors = info.config.params.vectors
            size = getattr(vectors, "size", None)
            if size is None:
                raise StoreError(
                    (
                        f"Collection {self.collection!r} uses named vectors, "
                        "which codeindex does not write."
                    ),
                    address=self.address,
                    operation="ensure_collection",
                )
            if size != dimension:
                raise CollectionDimensionMismatchError(
                    collection=self.collection,
                    expected=dimension,
                    actual=int(size),
                    address=self.url,
                )
            self.logger.debug("collection-verified", dimension=dimension)
            return

        await self._call(
            "ensure_collection",
            self._client.create_collection(
                collection_name=self.collection,
                vectors_config=VectorParams(
                    size=dimension,
                    distance=Distance.COSINE,
                ),
            ),
        )
        await self._call(
            "ensure_collection",
            self._client.create_payload_index(
                collection_name=self.collection,
                field_name=SOURCE_PATH_KEY,
                field_schema=PayloadSchemaType.KEYWORD,
            ),
        )
        self.logger.info("collection-created", dimension=dimension)

    async def upsert(self, points: Sequence[VectorPoint]) -> None:
        if not points:
            return
        structs = [
            PointStruct(
                id=point.id,
                vector=list(point.vector),
                payload=dict(point.payload),
            )
            for point in points
        ]
        await self._call(
            "upsert",
            self._client.upsert(
                collection_name=self.collection,
                points=structs,
                wait=True,
            ),
        )

    async def delete_by_source(self, source_path: str) -> None:
        await self._call(
            "delete_by_source",
            self._client.delete(
                collection_name=self.collection,
                points_selector=FilterSelector(
                    filter=_source_filter(source_path)
                ),
                wait=True,
            ),
        )

    async def count(self, source_path: str | None = None) -> int:
        result = await self._call(
            "count",
            self._client.count(
                collection_name=self.collection,
                count_filter=(
                    _source_filter(source_path)
                    if source_path is not None
                    else None
                ),
                exact=True,
            ),
        )
        return int(result.count)

    async def fetch(self, point_ids: Sequence[str]) -> tuple[VectorPoint, ...]:
        if not point_ids:
            return ()
        records = await self._call(
            "fetch",
            self._client.retrieve(
                collection_name=self.collection,
                ids=list(point_ids),
                with_payload=True,
                with_vectors=True,
            ),
        )
        return tuple(
            VectorPoint(
                id=str(record.id),
                vector=tuple(float(value) for value in record.vector or ()),
                payload=dict(record.payload or {}),
            )
            for record in records
        )

    async def flush(self) -> None:
        return None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()
