"""The indexing pass: scan, embed, store and report per file."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from codeindex.core.config import IndexerConfig
from codeindex.core.logging import Logger, get_logger
from codeindex.factory import IndexingServices, ServiceFactory
from codeindex.indexing.fingerprints import (
    CACHE_FILE_NAME,
    FingerprintCache,
    IndexIdentity,
)
from codeindex.indexing.orchestrator import (
    BatchOrchestrator,
    BatchReport,
    OrchestratorReport,
)
from codeindex.indexing.scanner import FileChange, ScannedFile, Scanner
from codeindex.models import ChunkTooLarge

__all__ = [
    "FileOutcome",
    "FileStatus",
    "IndexingService",
    "IndexingSummary",
    "run_indexing_pass",
]


class FileStatus(StrEnum):
    INDEXED = "indexed"
    UNCHANGED = "unchanged"
    REMOVED = "removed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class FileOutcome:
    """What happened to one workspace-relative path during a pass."""

    path: str
    status: FileStatus
    chunks: int = 0
    skipped_chunks: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "status": self.status.value,
            "chunks": self.chunks,
            "skipped_chunks": self.skipped_chunks,
            "error": self.error,
        }


@dataclass(slots=True)
class IndexingSummary:
    """Per-file outcomes plus the aggregate counts of one pass."""

    outcomes: list[FileOutcome] = field(default_factory=list)
    diagnostics: list[ChunkTooLarge] = field(default_factory=list)
    batches: list[BatchReport] = field(default_factory=list)
    halted: bool = False
    halt_reason: str | None = None
    cancelled: bool = False

    def _count(self, status: FileStatus) -> int:
        return sum(1 for item in self.outcomes if item.status is status)

    @property
    def files_indexed(self) -> int:
        return self._count(FileStatus.INDEXED)

    @property
    def files_unchanged(self) -> int:
        return self._count(FileStatus.UNCHANGED)

    @property
    def files_removed(self) -> int:
        return self._count(FileStatus.REMOVED)

    @property
    def files_failed(self) -> int:
        return self._count(FileStatus.FAILED)

    @property
    def files_cancelled(self) -> int:
        return self._count(FileStatus.CANCELLED)

    @property
    def chunks_embedded(self) -> int:
        return sum(item.chunks for item in self.outcomes)

    @property
    def chunks_skipped(self) -> int:
        return len(self.diagnostics)

    @property
    def batches_failed(self) -> int:
        return sum(1 for batch in self.batches if batch.error is not None)

    @property
    def ok(self) -> bool:
        return not (self.files_failed or self.halted or self.cancelled)

    def outcome_for(self, path: str) -> FileOutcome | None:
        for item in self.outcomes:
            if item.path == path:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_indexed": self.files_indexed,
            "files_unchanged": self.files_unchanged,
            "files_removed": self.files_removed,
            "files_failed": self.files_failed,
            "files_cancelled": self.files_cancelled,
            "chunks_embedded": self.chunks_embedded,
            "chunks_skipped": self.chunks_skipped,
            "batches_failed": self.batches_failed,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "cancelled": self.cancelled,
            "outcomes": [item.to_dict() for item in self.outcomes],
            "diagnostics": [item.describe() for item in self.diagnostics],
        }


class IndexingService:
    """Run one indexing pass over ``root`` with prepared services."""

    def __init__(
        self,
        *,
        root: Path,
        config: IndexerConfig,
        services: IndexingServices,
        logger: Logger | None = None,
    ) -> None:
        self.root = root
        self.config = config
        self.services = services
        self.logger = (logger or get_logger(__name__)).bind(
            component="indexing-service"
        )

    @property
    def cache_path(self) -> Path:
        return self.root / self.config.scan.cache_dir / CACHE_FILE_NAME

    def identity(self) -> IndexIdentity:
        provider = self.services.provider_config
        store = self.services.store_settings or self.config.vector_store
        return IndexIdentity(
            provider=provider.provider,
            model=provider.model,
            dimension=provider.dimension,
            collection=store.collection,
            store=store.kind.value,
        )

    def build_orchestrator(self) -> BatchOrchestrator:
        batching = self.config.batching
        return BatchOrchestrator(
            embedder=self.services.embedder,
            store=self.services.store,
            token_counter=self.services.token_counter,
            max_tokens_per_item=(
                self.services.provider_config.max_tokens_per_item
            ),
            max_batch_items=batching.max_items,
            max_batch_tokens=batching.max_tokens,
            concurrency=batching.concurrency,
            fatal_error_threshold=batching.fatal_error_threshold,
            logger=self.logger,
        )

    async def run(
        self,
        *,
        cancel: asyncio.Event | None = None,
    ) -> IndexingSummary:
        """Index every changed file and remove points of deleted ones.

        The fingerprint of a changed file is recorded only once every one of
        its admissible chunks is stored, so an interrupted or failed file is
        picked up again by the next pass.

        Raises:
            StoreError: If pending store writes cannot be flushed; the
                fingerprint cache is left untouched.
        """

        cache = await asyncio.to_thread(
            FingerprintCache.load,
            self.cache_path,
            identity=self.identity(),
            logger=self.logger,
        )
        scanner = Scanner(
            root=self.root,
            settings=self.config.scan,
            store=self.services.store,
            cache=cache,
            logger=self.logger,
        )
        self.logger.info(
            "index-started",
            root=str(self.root),
            **self.identity().as_dict(),
        )

        plan = await scanner.plan()
        await scanner.apply_removals(plan, cancel=cancel)
        report = await self.build_orchestrator().run(
            scanner.iter_chunks(plan, cancel=cancel),
            cancel=cancel,
        )
        # Stored points must be durable before any fingerprint claims them.
        await self.services.store.flush()

        summary = IndexingSummary(
            diagnostics=list(report.skipped),
            batches=list(report.batches),
            halted=report.halted,
            halt_reason=report.halt_reason,
            cancelled=bool(cancel is not None and cancel.is_set()),
        )
        resolution = _Resolution.from_report(report)
        for item in plan.files:
            outcome = resolution.outcome_for(item)
            summary.outcomes.append(outcome)
            if item.change is not FileChange.CHANGED:
                continue
            if outcome.status is FileStatus.INDEXED and item.fingerprint:
                await cache.record(item.path, item.fingerprint)
            else:
                # Its old points may already be gone; re-embed next time.
                await cache.forget(item.path)
        summary.outcomes.sort(key=lambda outcome: outcome.path)
        await cache.flush()

        self.logger.info(
            "index-summary",
            **{
                key: value
                for key, value in summary.to_dict().items()
                if key not in {"outcomes", "diagnostics"}
            },
        )
        return summary


@dataclass(slots=True)
class _Resolution:
    """Map scanner bookkeeping plus batch reports onto file outcomes.

    A changed file is indexed only when every chunk it produced was either
    stored or skipped for size; one failed batch fails the whole file.
    """

    embedded: set[tuple[str, int]]
    skipped: set[tuple[str, int]]
    failures: dict[str, BatchReport]
    halt_reason: str | None

    @classmethod
    def from_report(cls, report: OrchestratorReport) -> "_Resolution":
        return cls(
            embedded=report.embedded_keys(),
            skipped=report.skipped_keys(),
            failures=report.failures_by_path(),
            halt_reason=report.halt_reason if report.halted else None,
        )

    def outcome_for(self, item: ScannedFile) -> FileOutcome:
        if item.change is FileChange.UNCHANGED:
            return FileOutcome(item.path, FileStatus.UNCHANGED)
        if item.error is not None:
            return FileOutcome(item.path, FileStatus.FAILED, error=item.error)
        if not item.started:
            return self._not_reached(item.path)
        if item.change is FileChange.REMOVED:
            return FileOutcome(item.path, FileStatus.REMOVED)

        keys = set(item.chunk_keys)
        stored = len(keys & self.embedded)
        dropped = len(keys & self.skipped)
        failure = self.failures.get(item.path)
        if failure is not None:
            status, error = FileStatus.FAILED, failure.describe_error()
        elif keys <= self.embedded | self.skipped:
            status, error = FileStatus.INDEXED, None
        else:
            pending = self._not_reached(item.path)
            status, error = pending.status, pending.error
        return FileOutcome(
            item.path,
            status,
            chunks=stored,
            skipped_chunks=dropped,
            error=error,
        )

    def _not_reached(self, path: str) -> FileOutcome:
        if self.halt_reason is not None:
            return FileOutcome(path, FileStatus.FAILED, error=self.halt_reason)
        return FileOutcome(path, FileStatus.CANCELLED)


async def run_indexing_pass(
    root: Path,
    config: IndexerConfig,
    *,
    cancel: asyncio.Event | None = None,
    services: IndexingServices | None = None,
    logger: Logger | None = None,
) -> IndexingSummary:
    """Run one indexing pass over ``root``.

    When ``services`` is omitted they are built with :class:`ServiceFactory`
    and closed afterwards; caller-supplied services stay open.

    Raises:
        ConfigurationError: If the configuration cannot produce a session.
        StoreError: If the vector store cannot be reached during setup or
            its writes cannot be flushed.
    """

    root = Path(root).resolve()
    base_logger = logger or get_logger(__name__)
    if services is not None:
        service = IndexingService(
            root=root,
            config=config,
            services=services,
            logger=base_logger,
        )
        return await service.run(cancel=cancel)

    factory = ServiceFactory(config, root=root, logger=base_logger)
    owned = await factory.create()
    try:
        service = IndexingService(
            root=root,
            config=config,
            services=owned,
            logger=base_logger,
        )
        return await service.run(cancel=cancel)
    finally:
        await owned.aclose()
