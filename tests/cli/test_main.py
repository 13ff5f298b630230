"""Tests for the :mod:`codeindex.__main__` entrypoint."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from codeindex.__main__ import main
from codeindex.indexing.service import IndexingSummary


def test_main_invokes_cli(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("CODEINDEX_LOG_LEVEL", "warning")
    monkeypatch.setattr(sys, "argv", ["codeindex", "index", str(tmp_path)])

    seen: dict[str, object] = {}

    async def fake_run(root, config, *, cancel=None, logger=None):
        seen["root"] = root
        return IndexingSummary()

    def fake_configure_logging(*, level: str, log_dir=None, console=None):
        seen["level"] = level

    monkeypatch.setattr("codeindex.cli.run_indexing_pass", fake_run)
    monkeypatch.setattr(
        "codeindex.cli.configure_logging",
        fake_configure_logging,
    )

    with pytest.raises(SystemExit) as exc:
        main()

    assert exc.value.code == 0
    assert seen["root"] == tmp_path.resolve()
    assert seen["level"] == "WARNING"
