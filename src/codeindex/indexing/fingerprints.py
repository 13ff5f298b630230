"""Per-file fingerprint cache deciding changed / unchanged / removed.

The cache is a rebuildable hint, not a source of truth: losing it only costs
a full re-embed. It is discarded whenever the embedding identity (provider,
model, dimension, collection) differs from the one it was written for.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping

from codeindex.core.logging import Logger, get_logger

__all__ = ["CACHE_FILE_NAME", "FingerprintCache", "IndexIdentity"]

CACHE_FILE_NAME = "fingerprints.json"
CACHE_VERSION = 1


@dataclass(frozen=True, slots=True)
class IndexIdentity:
    """What the stored vectors were produced with."""

    provider: str
    model: str
    dimension: int
    collection: str
    store: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class FingerprintCache:
    """JSON-backed map of workspace-relative path to content fingerprint.

    Reads and writes go through an :class:`asyncio.Lock` so concurrent
    scanner tasks never observe a half-applied update.
    """

    def __init__(
        self,
        path: Path,
        *,
        identity: IndexIdentity,
        entries: Mapping[str, str] | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.path = path
        self.identity = identity
        self._entries: dict[str, str] = dict(entries or {})
        self._lock = asyncio.Lock()
        self._dirty = False
        self.logger = (logger or get_logger(__name__)).bind(
            component="fingerprint-cache"
        )

    @classmethod
    def load(
        cls,
        path: Path,
        *,
        identity: IndexIdentity,
        logger: Logger | None = None,
    ) -> "FingerprintCache":
        """Load the cache at ``path``, starting empty when it is unusable."""

        cache = cls(path, identity=identity, logger=logger)
        if not path.exists():
            return cache
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            cache.logger.warning(
                "fingerprint-cache-reset",
                path=str(path),
                reason=f"unreadable: {exc}",
            )
            cache._dirty = True
            return cache

        if not isinstance(payload, Mapping):
            payload = {}
        stored_identity = payload.get("identity")
        if payload.get("version") != CACHE_VERSION or (
            stored_identity != identity.as_dict()
        ):
            cache.logger.info(
                "fingerprint-cache-reset",
                path=str(path),
                reason="embedding identity changed",
                previous=stored_identity,
            )
            cache._dirty = True
            return cache

        files = payload.get("files") or {}
        cache._entries = {
            str(key): str(value)
            for key, value in files.items()
            if isinstance(value, str)
        }
        return cache

    def __len__(self) -> int:
        return len(self._entries)

    async def snapshot(self) -> dict[str, str]:
        async with self._lock:
            return dict(self._entries)

    async def record(self, relative_path: str, fingerprint: str) -> None:
        async with self._lock:
            if self._entries.get(relative_path) != fingerprint:
                self._entries[relative_path] = fingerprint
                self._dirty = True

    async def forget(self, relative_path: str) -> None:
        async with self._lock:
            if self._entries.pop(relative_path, None) is not None:
                self._dirty = True

    async def flush(self) -> None:
        """Persist pending changes atomically."""

        async with self._lock:
            if not self._dirty:
                return
            payload = {
                "version": CACHE_VERSION,
                "identity": self.identity.as_dict(),
                "files": dict(sorted(self._entries.items())),
            }
            await asyncio.to_thread(_atomic_write_json, self.path, payload)
            self._dirty = False


def _atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    encoded = text.encode("utf-8")
    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            prefix=".fingerprints-",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(encoded)
            temp_path = Path(handle.name)
        os.replace(temp_path, path)
    except OSError:
        if temp_path is not None:
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise
