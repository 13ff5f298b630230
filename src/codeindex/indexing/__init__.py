"""Workspace scanning, batch orchestration and the indexing pass."""

from __future__ import annotations

from codeindex.indexing.chunker import CHUNKER_VERSION, LineChunker
from codeindex.indexing.fingerprints import FingerprintCache, IndexIdentity
from codeindex.indexing.orchestrator import (
    BatchOrchestrator,
    BatchReport,
    BatchStatus,
    OrchestratorReport,
)
from codeindex.indexing.scanner import (
    FileChange,
    ScanPlan,
    ScannedFile,
    Scanner,
)
from codeindex.indexing.service import (
    FileOutcome,
    FileStatus,
    IndexingService,
    IndexingSummary,
    run_indexing_pass,
)
from codeindex.indexing.traversal import WorkspaceFile, WorkspaceWalker

__all__ = [
    "BatchOrchestrator",
    "BatchReport",
    "BatchStatus",
    "CHUNKER_VERSION",
    "FileChange",
    "FileOutcome",
    "FileStatus",
    "FingerprintCache",
    "IndexIdentity",
    "IndexingService",
    "IndexingSummary",
    "LineChunker",
    "OrchestratorReport",
    "ScanPlan",
    "ScannedFile",
    "Scanner",
    "WorkspaceFile",
    "WorkspaceWalker",
    "run_indexing_pass",
]
