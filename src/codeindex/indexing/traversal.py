"""Workspace traversal honoring ``.gitignore`` files and scan settings."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

from pathspec import PathSpec

from codeindex.core.config import ScanSettings
from codeindex.core.logging import Logger, get_logger

__all__ = [
    "DEFAULT_IGNORED_DIRS",
    "WorkspaceFile",
    "WorkspaceWalker",
]

DEFAULT_IGNORED_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        ".venv",
        "venv",
        "__pycache__",
        "node_modules",
        ".mypy_cache",
        ".pytest_cache",
        ".tox",
        "dist",
        "build",
    }
)


@dataclass(frozen=True, slots=True)
class WorkspaceFile:
    """A candidate file discovered during traversal."""

    absolute_path: Path
    relative_path: str
    size: int


class WorkspaceWalker:
    """Enumerate indexable files under ``root`` in a stable order."""

    def __init__(
        self,
        *,
        root: Path,
        settings: ScanSettings,
        logger: Logger | None = None,
    ) -> None:
        if not root.exists():
            raise FileNotFoundError(f"Workspace root not found: {root}")
        if not root.is_dir():
            raise NotADirectoryError(
                f"Workspace root must be a directory: {root}"
            )
        self._root = root.resolve()
        self._settings = settings
        self._extensions = frozenset(settings.include_extensions)
        self._ignored_dirs = DEFAULT_IGNORED_DIRS | {
            Path(settings.cache_dir).name
        }
        self._exclude_spec = (
            PathSpec.from_lines("gitwildmatch", settings.exclude_patterns)
            if settings.exclude_patterns
            else None
        )
        self._gitignore_cache: dict[Path, PathSpec | None] = {}
        self.logger = (logger or get_logger(__name__)).bind(
            component="traversal"
        )

    @property
    def root(self) -> Path:
        return self._root

    def iter_files(self) -> Iterator[WorkspaceFile]:
        """Yield files that pass every filter, sorted by path per directory."""

        yield from self._walk(self._root, [])

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _walk(
        self,
        directory: Path,
        stack: list[PathSpec],
    ) -> Iterator[WorkspaceFile]:
        local_spec = self._load_gitignore(directory)
        if local_spec is not None:
            stack = [*stack, local_spec]

        try:
            entries = sorted(directory.iterdir(), key=lambda p: p.name)
        except OSError as exc:
            self.logger.warning(
                "scan-directory-unreadable",
                path=str(directory),
                error=str(exc),
            )
            return

        for entry in entries:
            if entry.is_symlink():
                continue
            try:
                is_dir = entry.is_dir()
            except OSError:
                continue

            relative = entry.relative_to(self._root).as_posix()
            if is_dir:
                if entry.name in self._ignored_dirs:
                    continue
                if self._is_ignored(f"{relative}/", stack):
                    continue
                yield from self._walk(entry, stack)
                continue

            if not entry.is_file():
                continue
            suffix = entry.suffix.lower()
            if self._extensions and suffix not in self._extensions:
                continue
            if self._is_ignored(relative, stack):
                continue

            try:
                size = entry.stat().st_size
            except OSError:
                continue
            if size > self._settings.max_file_bytes:
                self.logger.info(
                    "scan-file-too-large",
                    path=relative,
                    size=size,
                    limit=self._settings.max_file_bytes,
                )
                continue

            yield WorkspaceFile(
                absolute_path=entry,
                relative_path=relative,
                size=size,
            )

    def _is_ignored(self, candidate: str, stack: Sequence[PathSpec]) -> bool:
        if self._exclude_spec is not None and self._exclude_spec.match_file(
            candidate
        ):
            return True
        return any(spec.match_file(candidate) for spec in stack)

    def _load_gitignore(self, directory: Path) -> PathSpec | None:
        if not self._settings.respect_gitignore:
            return None
        if directory in self._gitignore_cache:
            return self._gitignore_cache[directory]
        gitignore = directory / ".gitignore"
        spec: PathSpec | None = None
        if gitignore.is_file():
            try:
                lines = gitignore.read_text(encoding="utf-8").splitlines()
            except OSError:
                lines = []
            # Nested .gitignore patterns are relative to their own directory.
            prefix = directory.relative_to(self._root).as_posix()
            if prefix != ".":
                lines = [_anchor(line, prefix) for line in lines]
            spec = PathSpec.from_lines("gitwildmatch", lines)
        self._gitignore_cache[directory] = spec
        return spec


def _anchor(line: str, prefix: str) -> str:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return stripped
    negated = stripped.startswith("!")
    pattern = stripped[1:] if negated else stripped
    body = pattern.rstrip("/")
    if "/" in body:
        anchored = f"/{prefix}/{pattern.lstrip('/')}"
    else:
        anchored = f"/{prefix}/**/{pattern}"
    return f"!{anchored}" if negated else anchored
