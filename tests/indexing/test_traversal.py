from __future__ import annotations

from pathlib import Path

import pytest

from codeindex.core.config import ScanSettings
from codeindex.indexing.traversal import WorkspaceWalker


def _walk(root: Path, **settings) -> list[str]:
    walker = WorkspaceWalker(root=root, settings=ScanSettings(**settings))
    return [item.relative_path for item in walker.iter_files()]


def test_walker_returns_sorted_relative_paths(workspace, write_files) -> None:
    write_files(
        workspace,
        {"b.py": "b", "a.py": "a", "pkg/z.py": "z", "pkg/c.py": "c"},
    )

    assert _walk(workspace) == ["a.py", "b.py", "pkg/c.py", "pkg/z.py"]


def test_walker_filters_extensions_case_insensitively(
    workspace,
    write_files,
) -> None:
    write_files(
        workspace,
        {"main.PY": "x", "notes.md": "x", "image.png": "x"},
    )

    assert _walk(workspace, include_extensions=("py", ".MD")) == [
        "main.PY",
        "notes.md",
    ]


def test_walker_honours_root_gitignore(workspace, write_files) -> None:
    write_files(
        workspace,
        {
            ".gitignore": "*.log\nbuild_out/\n!keep.log\n",
            "app.py": "x",
            "debug.log": "x",
            "keep.log": "x",
            "build_out/gen.py": "x",
        },
    )

    assert _walk(workspace) == [".gitignore", "app.py", "keep.log"]


def test_nested_gitignore_is_anchored_to_its_directory(
    workspace,
    write_files,
) -> None:
    write_files(
        workspace,
        {
            "pkg/.gitignore": "generated.py\n/local.py\n",
            "pkg/generated.py": "x",
            "pkg/local.py": "x",
            "pkg/sub/generated.py": "x",
            "pkg/sub/local.py": "x",
            "generated.py": "x",
            "local.py": "x",
        },
    )

    assert _walk(workspace, include_extensions=(".py",)) == [
        "generated.py",
        "local.py",
        "pkg/sub/local.py",
    ]


def test_gitignore_can_be_disabled(workspace, write_files) -> None:
    write_files(workspace, {".gitignore": "*.py\n", "a.py": "x"})

    assert _walk(
        workspace,
        include_extensions=(".py",),
        respect_gitignore=False,
    ) == ["a.py"]


def test_exclude_patterns_and_default_ignored_dirs(
    workspace,
    write_files,
) -> None:
    write_files(
        workspace,
        {
            "src/app.py": "x",
            "src/app_test.py": "x",
            "node_modules/lib/index.py": "x",
            ".git/hooks/pre-commit.py": "x",
            ".codeindex/cache.py": "x",
        },
    )

    assert _walk(
        workspace,
        include_extensions=(".py",),
        exclude_patterns=("*_test.py",),
    ) == ["src/app.py"]


def test_files_over_size_limit_are_skipped(workspace, write_files) -> None:
    write_files(workspace, {"small.py": "x" * 10, "big.py": "x" * 100})

    assert _walk(workspace, max_file_bytes=50) == ["small.py"]


def test_symlinks_are_not_followed(workspace, write_files) -> None:
    write_files(workspace, {"real.py": "x"})
    (workspace / "alias.py").symlink_to(workspace / "real.py")

    assert _walk(workspace) == ["real.py"]


def test_walker_requires_existing_directory(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        WorkspaceWalker(root=tmp_path / "missing", settings=ScanSettings())

    target = tmp_path / "file.txt"
    target.write_text("x", encoding="utf-8")
    with pytest.raises(NotADirectoryError):
        WorkspaceWalker(root=target, settings=ScanSettings())
