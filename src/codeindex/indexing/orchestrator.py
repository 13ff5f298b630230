"""Batch packing and bounded-concurrency dispatch to the embedder.

Chunks flow through four stages:

1. Admission: chunks whose token estimate exceeds the per-item limit are
   excluded and reported as :class:`~codeindex.models.ChunkTooLarge`.
2. Packing: admitted chunks are grouped greedily, in input order, under the
   item-count and cumulative-token limits.
3. Dispatch: a fixed pool of worker tasks pulls batches from a bounded queue
   and calls the embedder. The queue bound throttles the chunk producer.
4. Write: a batch is upserted only once every vector for it is available.

A failed batch is final. The embedder already spent its retry budget, so the
orchestrator records the failure and moves on to independent batches.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum
from typing import AsyncIterable, AsyncIterator, Iterable

from codeindex.core.logging import Logger, get_logger
from codeindex.embeddings.base import Embedder
from codeindex.embeddings.errors import EmbedError
from codeindex.embeddings.tokens import TokenCounter
from codeindex.models import Chunk, ChunkTooLarge, EmbeddingBatch, VectorPoint
from codeindex.vectorstore import VectorStoreClient
from codeindex.vectorstore.errors import StoreConnectionError, StoreError

__all__ = [
    "BatchOrchestrator",
    "BatchReport",
    "BatchStatus",
    "OrchestratorReport",
]

ChunkKey = tuple[str, int]


class BatchStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_DISPATCHED = "not_dispatched"


@dataclass(frozen=True, slots=True)
class BatchReport:
    """Outcome of one packed batch."""

    sequence: int
    status: BatchStatus
    chunk_keys: tuple[ChunkKey, ...]
    token_count: int
    attempts: int = 0
    error: str | None = None
    error_kind: str | None = None
    status_code: int | None = None

    @property
    def source_paths(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(path for path, _ in self.chunk_keys))

    def describe_error(self) -> str | None:
        if self.error is None:
            return None
        parts = [f"batch #{self.sequence}", f"{self.error_kind}"]
        if self.attempts:
            parts.append(f"after {self.attempts} attempt(s)")
        if self.status_code is not None:
            parts.append(f"status {self.status_code}")
        return f"{self.error} ({', '.join(parts)})"


@dataclass(slots=True)
class OrchestratorReport:
    """Everything a run produced, in the order it happened."""

    batches: list[BatchReport] = field(default_factory=list)
    skipped: list[ChunkTooLarge] = field(default_factory=list)
    halted: bool = False
    halt_reason: str | None = None
    cancelled: bool = False

    @property
    def failed_batches(self) -> tuple[BatchReport, ...]:
        return tuple(
            batch
            for batch in self.batches
            if batch.status is BatchStatus.FAILED
        )

    @property
    def chunks_embedded(self) -> int:
        return sum(
            len(batch.chunk_keys)
            for batch in self.batches
            if batch.status is BatchStatus.SUCCEEDED
        )

    def embedded_keys(self) -> set[ChunkKey]:
        return {
            key
            for batch in self.batches
            if batch.status is BatchStatus.SUCCEEDED
            for key in batch.chunk_keys
        }

    def skipped_keys(self) -> set[ChunkKey]:
        return {(item.source_path, item.index) for item in self.skipped}

    def failures_by_path(self) -> dict[str, BatchReport]:
        """Return the first failed batch touching each source path."""

        failures: dict[str, BatchReport] = {}
        for batch in self.failed_batches:
            for path in batch.source_paths:
                failures.setdefault(path, batch)
        return failures


@dataclass(slots=True)
class _Packer:
    max_items: int
    max_tokens: int
    chunks: list[Chunk] = field(default_factory=list)
    tokens: list[int] = field(default_factory=list)
    sequence: int = 0

    def fits(self, tokens: int) -> bool:
        if not self.chunks:
            return True
        return (
            len(self.chunks) < self.max_items
            and sum(self.tokens) + tokens <= self.max_tokens
        )

    def add(self, chunk: Chunk, tokens: int) -> None:
        self.chunks.append(chunk)
        self.tokens.append(tokens)

    def take(self) -> EmbeddingBatch | None:
        if not self.chunks:
            return None
        batch = EmbeddingBatch(
            chunks=tuple(self.chunks),
            token_count=sum(self.tokens),
            sequence=self.sequence,
            item_tokens=tuple(self.tokens),
        )
        self.sequence += 1
        self.chunks = []
        self.tokens = []
        return batch


class BatchOrchestrator:
    """Turn a chunk stream into vector store writes."""

    def __init__(
        self,
        *,
        embedder: Embedder,
        store: VectorStoreClient,
        token_counter: TokenCounter,
        max_tokens_per_item: int,
        max_batch_items: int = 64,
        max_batch_tokens: int = 100_000,
        concurrency: int = 4,
        fatal_error_threshold: int = 2,
        logger: Logger | None = None,
    ) -> None:
        if max_batch_items < 1 or max_batch_tokens < 1:
            raise ValueError("batch limits must be >= 1")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if fatal_error_threshold < 1:
            raise ValueError("fatal_error_threshold must be >= 1")
        self.embedder = embedder
        self.store = store
        self.token_counter = token_counter
        # A lone chunk must always fit in a batch of its own.
        self.item_limit = min(max_tokens_per_item, max_batch_tokens)
        self.max_batch_items = max_batch_items
        self.max_batch_tokens = max_batch_tokens
        self.concurrency = concurrency
        self.fatal_error_threshold = fatal_error_threshold
        self.logger = (logger or get_logger(__name__)).bind(
            component="orchestrator"
        )

    # ------------------------------------------------------------------
    # Packing
    # ------------------------------------------------------------------
    def admit(self, chunk: Chunk) -> tuple[int, ChunkTooLarge | None]:
        """Return the token estimate for ``chunk`` and a diagnostic if any."""

        tokens = self.token_counter.count(chunk.text)
        if tokens <= self.item_limit:
            return tokens, None
        return tokens, ChunkTooLarge(
            source_path=chunk.source_path,
            index=chunk.index,
            token_count=tokens,
            limit=self.item_limit,
        )

    def pack(
        self,
        chunks: Iterable[Chunk],
        *,
        skipped: list[ChunkTooLarge] | None = None,
    ) -> list[EmbeddingBatch]:
        """Pack ``chunks`` eagerly; oversize chunks land in ``skipped``."""

        packer = _Packer(self.max_batch_items, self.max_batch_tokens)
        batches: list[EmbeddingBatch] = []
        sink = skipped if skipped is not None else []
        for chunk in chunks:
            batch = self._offer(packer, chunk, sink)
            if batch is not None:
                batches.append(batch)
        tail = packer.take()
        if tail is not None:
            batches.append(tail)
        return batches

    def _offer(
        self,
        packer: _Packer,
        chunk: Chunk,
        skipped: list[ChunkTooLarge],
    ) -> EmbeddingBatch | None:
        tokens, diagnostic = self.admit(chunk)
        if diagnostic is not None:
            skipped.append(diagnostic)
            self.logger.warning(
                "chunk-too-large",
                path=diagnostic.source_path,
                chunk_index=diagnostic.index,
                token_count=diagnostic.token_count,
                limit=diagnostic.limit,
            )
            return None
        ready = None if packer.fits(tokens) else packer.take()
        packer.add(chunk, tokens)
        return ready

    async def _batches(
        self,
        chunks: AsyncIterator[Chunk],
        state: "_RunState",
    ) -> AsyncIterator[EmbeddingBatch]:
        packer = _Packer(self.max_batch_items, self.max_batch_tokens)
        async for chunk in chunks:
            batch = self._offer(packer, chunk, state.report.skipped)
            if batch is not None:
                yield batch
            if state.stop.is_set():
                return
        tail = packer.take()
        if tail is not None:
            yield tail

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def run(
        self,
        chunks: Iterable[Chunk] | AsyncIterable[Chunk],
        *,
        cancel: asyncio.Event | None = None,
    ) -> OrchestratorReport:
        """Embed and store every admissible chunk from ``chunks``.

        Setting ``cancel`` stops packing and dispatch; batches already handed
        to the embedder finish and are written normally.
        """

        report = OrchestratorReport()
        state = _RunState(report=report, stop=asyncio.Event(), cancel=cancel)
        queue: asyncio.Queue[EmbeddingBatch | None] = asyncio.Queue(
            maxsize=self.concurrency * 2
        )
        async with asyncio.TaskGroup() as group:
            for _ in range(self.concurrency):
                group.create_task(self._worker(queue, state))
            watcher = (
                group.create_task(self._watch_cancel(cancel, state))
                if cancel is not None
                else None
            )
            await self._produce(chunks, queue, state)
            if watcher is not None:
                watcher.cancel()

        report.cancelled = bool(cancel is not None and cancel.is_set())
        report.batches.sort(key=lambda item: item.sequence)
        return report

    async def _produce(
        self,
        chunks: Iterable[Chunk] | AsyncIterable[Chunk],
        queue: asyncio.Queue[EmbeddingBatch | None],
        state: "_RunState",
    ) -> None:
        async with (
            aclosing(_as_async(chunks)) as stream,
            aclosing(self._batches(stream, state)) as batches,
        ):
            async for batch in batches:
                if state.stop.is_set():
                    self._skip(batch, state.report)
                    break
                await queue.put(batch)
        for _ in range(self.concurrency):
            await queue.put(None)

    async def _watch_cancel(
        self,
        cancel: asyncio.Event,
        state: "_RunState",
    ) -> None:
        await cancel.wait()
        if not state.stop.is_set():
            self.logger.info("indexing-cancelled")
        state.stop.set()

    async def _worker(
        self,
        queue: asyncio.Queue[EmbeddingBatch | None],
        state: "_RunState",
    ) -> None:
        while True:
            batch = await queue.get()
            try:
                if batch is None:
                    return
                if state.stop.is_set() or state.cancelled:
                    self._skip(batch, state.report)
                    continue
                await self._process(batch, state)
            finally:
                queue.task_done()

    def _skip(self, batch: EmbeddingBatch, report: OrchestratorReport) -> None:
        report.batches.append(
            BatchReport(
                sequence=batch.sequence,
                status=BatchStatus.NOT_DISPATCHED,
                chunk_keys=tuple(chunk.key for chunk in batch.chunks),
                token_count=batch.token_count,
            )
        )

    async def _process(
        self,
        batch: EmbeddingBatch,
        state: "_RunState",
    ) -> None:
        report = state.report
        keys = tuple(chunk.key for chunk in batch.chunks)
        try:
            results = await self.embedder.embed(batch)
        except EmbedError as error:
            report.batches.append(
                BatchReport(
                    sequence=batch.sequence,
                    status=BatchStatus.FAILED,
                    chunk_keys=keys,
                    token_count=batch.token_count,
                    attempts=error.attempts,
                    error=str(error),
                    error_kind=error.kind.value,
                    status_code=error.status_code,
                )
            )
            self.logger.error(
                "batch-failed",
                batch=batch.sequence,
                paths=batch.source_paths,
                first_chunk=keys[0][1],
                **error.context(),
            )
            if error.fatal:
                self._record_fatal(error, state)
            return

        points = [
            VectorPoint.from_result(result, token_count=batch.tokens_for(pos))
            for pos, result in enumerate(results)
        ]
        try:
            await self.store.upsert(points)
        except StoreError as exc:
            kind = (
                "store_connection"
                if isinstance(exc, StoreConnectionError)
                else "store_error"
            )
            report.batches.append(
                BatchReport(
                    sequence=batch.sequence,
                    status=BatchStatus.FAILED,
                    chunk_keys=keys,
                    token_count=batch.token_count,
                    attempts=1,
                    error=str(exc),
                    error_kind=kind,
                )
            )
            self.logger.error(
                "batch-upsert-failed",
                batch=batch.sequence,
                paths=batch.source_paths,
                address=exc.address,
                error=str(exc),
            )
            return

        report.batches.append(
            BatchReport(
                sequence=batch.sequence,
                status=BatchStatus.SUCCEEDED,
                chunk_keys=keys,
                token_count=batch.token_count,
            )
        )
        self.logger.debug(
            "batch-stored",
            batch=batch.sequence,
            points=len(points),
            token_count=batch.token_count,
        )

    def _record_fatal(self, error: EmbedError, state: "_RunState") -> None:
        state.fatal_errors += 1
        self.logger.warning(
            "provider-error-likely-recurring",
            kind=error.kind.value,
            provider=error.provider,
            model=error.model,
            occurrences=state.fatal_errors,
            threshold=self.fatal_error_threshold,
        )
        if state.fatal_errors < self.fatal_error_threshold:
            return
        if state.stop.is_set():
            return
        state.report.halted = True
        state.report.halt_reason = (
            f"indexing halted after {state.fatal_errors} "
            f"{error.kind.value} errors from {error.provider}: {error}"
        )
        state.stop.set()
        self.logger.error(
            "orchestrator-halted",
            reason=state.report.halt_reason,
        )


@dataclass(slots=True)
class _RunState:
    report: OrchestratorReport
    stop: asyncio.Event
    cancel: asyncio.Event | None = None
    fatal_errors: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


async def _as_async(
    chunks: Iterable[Chunk] | AsyncIterable[Chunk],
) -> AsyncIterator[Chunk]:
    if isinstance(chunks, AsyncIterable):
        iterator = aiter(chunks)
        try:
            async for chunk in iterator:
                yield chunk
        finally:
            close = getattr(iterator, "aclose", None)
            if close is not None:
                await close()
    else:
        for chunk in chunks:
            yield chunk
