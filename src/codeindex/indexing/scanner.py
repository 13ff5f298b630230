"""Change detection and chunk production for the indexing pass."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import AsyncIterator

from codeindex.core.config import ScanSettings
from codeindex.core.logging import Logger, get_logger
from codeindex.indexing.chunker import LineChunker
from codeindex.indexing.fingerprints import FingerprintCache
from codeindex.indexing.hashing import hash_bytes
from codeindex.indexing.traversal import WorkspaceFile, WorkspaceWalker
from codeindex.models import Chunk
from codeindex.vectorstore import VectorStoreClient
from codeindex.vectorstore.errors import StoreError

__all__ = [
    "FileChange",
    "ScanPlan",
    "ScannedFile",
    "Scanner",
]


class FileChange(StrEnum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    REMOVED = "removed"
    UNREADABLE = "unreadable"


@dataclass(slots=True)
class ScannedFile:
    """Scanner bookkeeping for one workspace-relative path.

    ``chunk_keys`` is filled once the file has been chunked and its stale
    points deleted; ``started`` marks that moment. ``fingerprint`` is the
    digest of the exact bytes that were chunked.
    """

    path: str
    change: FileChange
    fingerprint: str | None = None
    absolute_path: Path | None = None
    chunk_keys: tuple[tuple[str, int], ...] = ()
    started: bool = False
    error: str | None = None


@dataclass(slots=True)
class ScanPlan:
    files: list[ScannedFile] = field(default_factory=list)

    def by_change(self, change: FileChange) -> list[ScannedFile]:
        return [item for item in self.files if item.change is change]

    @property
    def changed(self) -> list[ScannedFile]:
        return self.by_change(FileChange.CHANGED)

    @property
    def removed(self) -> list[ScannedFile]:
        return self.by_change(FileChange.REMOVED)


class Scanner:
    """Classify workspace files and emit chunks for the changed ones.

    For a changed file the order is fixed: read and chunk, delete its old
    points, then yield the new chunks. A crash after the delete leaves the
    file unindexed; its fingerprint is only recorded after every chunk is
    stored, so the next pass repairs it.
    """

    def __init__(
        self,
        *,
        root: Path,
        settings: ScanSettings,
        store: VectorStoreClient,
        cache: FingerprintCache,
        chunker: LineChunker | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.root = root
        self.settings = settings
        self.store = store
        self.cache = cache
        self.chunker = chunker or LineChunker(
            chunk_lines=settings.chunk_lines,
            overlap=settings.chunk_overlap,
        )
        self.logger = (logger or get_logger(__name__)).bind(
            component="scanner"
        )
        self._walker = WorkspaceWalker(
            root=root,
            settings=settings,
            logger=self.logger,
        )

    def fingerprint(self, data: bytes) -> str:
        return hash_bytes(data, salt=self.chunker.version)

    async def plan(self) -> ScanPlan:
        """Walk the workspace and classify every known or present file."""

        known = await self.cache.snapshot()
        plan = await asyncio.to_thread(self._plan_sync, known)
        self.logger.info(
            "scan-planned",
            changed=len(plan.changed),
            unchanged=len(plan.by_change(FileChange.UNCHANGED)),
            removed=len(plan.removed),
            unreadable=len(plan.by_change(FileChange.UNREADABLE)),
        )
        return plan

    def _plan_sync(self, known: dict[str, str]) -> ScanPlan:
        plan = ScanPlan()
        seen: set[str] = set()
        for item in self._walker.iter_files():
            seen.add(item.relative_path)
            plan.files.append(self._classify(item, known))
        for path in sorted(set(known) - seen):
            plan.files.append(
                ScannedFile(path=path, change=FileChange.REMOVED)
            )
        return plan

    def _classify(
        self,
        item: WorkspaceFile,
        known: dict[str, str],
    ) -> ScannedFile:
        try:
            data = item.absolute_path.read_bytes()
        except OSError as exc:
            self.logger.warning(
                "scan-file-failed",
                path=item.relative_path,
                stage="fingerprint",
                error=str(exc),
            )
            return ScannedFile(
                path=item.relative_path,
                change=FileChange.UNREADABLE,
                absolute_path=item.absolute_path,
                error=f"unable to read file: {exc}",
            )
        digest = self.fingerprint(data)
        change = (
            FileChange.UNCHANGED
            if known.get(item.relative_path) == digest
            else FileChange.CHANGED
        )
        return ScannedFile(
            path=item.relative_path,
            change=change,
            fingerprint=digest,
            absolute_path=item.absolute_path,
        )

    async def apply_removals(
        self,
        plan: ScanPlan,
        *,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Delete points of files that disappeared from the workspace."""

        for item in plan.removed:
            if cancel is not None and cancel.is_set():
                return
            try:
                await self.store.delete_by_source(item.path)
            except StoreError as exc:
                item.error = str(exc)
                self.logger.error(
                    "scan-file-failed",
                    path=item.path,
                    stage="delete-removed",
                    address=exc.address,
                    error=str(exc),
                )
                continue
            item.started = True
            await self.cache.forget(item.path)
            self.logger.info("file-removed", path=item.path)

    async def iter_chunks(
        self,
        plan: ScanPlan,
        *,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[Chunk]:
        """Yield chunks of changed files after clearing their old points."""

        for item in plan.changed:
            if cancel is not None and cancel.is_set():
                return
            chunks = await self._prepare(item)
            if chunks is None:
                continue
            for chunk in chunks:
                yield chunk

    async def _prepare(self, item: ScannedFile) -> tuple[Chunk, ...] | None:
        path = item.absolute_path or self.root / item.path
        try:
            data = await asyncio.to_thread(path.read_bytes)
            chunks = self.chunker.chunk_bytes(item.path, data)
        except (OSError, ValueError) as exc:
            item.error = f"unable to read or chunk file: {exc}"
            self.logger.warning(
                "scan-file-failed",
                path=item.path,
                stage="chunk",
                error=str(exc),
            )
            return None

        try:
            await self.store.delete_by_source(item.path)
        except StoreError as exc:
            item.error = str(exc)
            self.logger.error(
                "scan-file-failed",
                path=item.path,
                stage="delete-stale",
                address=exc.address,
                error=str(exc),
            )
            return None

        item.fingerprint = self.fingerprint(data)
        item.chunk_keys = tuple(chunk.key for chunk in chunks)
        item.started = True
        self.logger.debug("file-chunked", path=item.path, chunks=len(chunks))
        return chunks
