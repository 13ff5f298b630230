"""Command-line interface for :mod:`codeindex`.

Example:
    >>> import typer
    >>> from codeindex.cli import create_app
    >>> isinstance(create_app(), typer.Typer)
    True
"""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Any

import typer

from codeindex.core.config import (
    IndexerConfig,
    env_config_from_environ,
    load_config,
    load_user_config,
)
from codeindex.core.errors import ConfigurationError
from codeindex.core.logging import Logger, configure_logging, get_logger
from codeindex.indexing.service import (
    FileStatus,
    IndexingSummary,
    run_indexing_pass,
)
from codeindex.vectorstore.errors import StoreError

USER_CONFIG_NAME = "codeindex.toml"

_app_help = (
    "Keep a semantic vector index of a codebase in sync."
    "\n\n"
    "Use `codeindex index <root>` to embed changed files and drop the points "
    "of deleted ones."
)


def _cli_overrides(
    *,
    log_level: str | None,
    provider: str | None,
    model: str | None,
    store: str | None,
    collection: str | None,
    concurrency: int | None,
) -> dict[str, Any]:
    """Translate CLI flags into a config layer."""

    overrides: dict[str, Any] = {}
    if log_level:
        overrides["log_level"] = log_level
    embedder = {
        key: value
        for key, value in (("provider", provider), ("model", model))
        if value
    }
    if embedder:
        overrides["embedder"] = embedder
    vector_store = {
        key: value
        for key, value in (("kind", store), ("collection", collection))
        if value
    }
    if vector_store:
        overrides["vector_store"] = vector_store
    if concurrency is not None:
        overrides["batching"] = {"concurrency": concurrency}
    return overrides


def _resolve_config(
    root: Path,
    config_path: Path | None,
    overrides: dict[str, Any],
) -> IndexerConfig:
    candidate = config_path or root / USER_CONFIG_NAME
    user_config = None
    if config_path is not None or candidate.is_file():
        user_config = load_user_config(candidate)
    return load_config(
        user_config=user_config,
        env_config=env_config_from_environ(),
        cli_overrides=overrides,
    )


async def _run_with_interrupts(
    root: Path,
    config: IndexerConfig,
    logger: Logger,
) -> IndexingSummary:
    """Run the pass, turning SIGINT/SIGTERM into a cooperative cancel."""

    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, cancel.set)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    try:
        return await run_indexing_pass(
            root,
            config,
            cancel=cancel,
            logger=logger,
        )
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _emit_summary(summary: IndexingSummary, *, verbose: bool) -> None:
    """Print a human-friendly summary of the pass."""

    if summary.ok:
        typer.secho("Index up to date", fg=typer.colors.GREEN, bold=True)
    elif summary.cancelled:
        typer.secho("Indexing cancelled", fg=typer.colors.YELLOW, bold=True)
    else:
        typer.secho(
            "Indexing finished with failures",
            fg=typer.colors.RED,
            bold=True,
        )

    counts = summary.to_dict()
    for key in (
        "files_indexed",
        "files_unchanged",
        "files_removed",
        "files_failed",
        "files_cancelled",
        "chunks_embedded",
        "chunks_skipped",
        "batches_failed",
    ):
        typer.echo(f"  {key.replace('_', ' ')}: {counts[key]}")
    if summary.halt_reason:
        typer.echo(f"  halted: {summary.halt_reason}")

    for diagnostic in summary.diagnostics:
        typer.secho(f"  skipped: {diagnostic.describe()}", fg="yellow")
    for outcome in summary.outcomes:
        if outcome.status is FileStatus.FAILED:
            typer.secho(f"  failed: {outcome.path}: {outcome.error}", fg="red")
        elif verbose and outcome.status is not FileStatus.UNCHANGED:
            typer.echo(f"  {outcome.status.value}: {outcome.path}")


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``codeindex`` CLI."""

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
        cls=typer.core.TyperGroup,
    )

    @app.callback()
    def main_callback() -> None:
        """Top-level CLI callback ensuring subcommands are dispatched."""

        return None

    @app.command(
        "index",
        help="Run one indexing pass over a workspace directory.",
    )
    def index_command(  # noqa: PLR0913
        root: Path = typer.Argument(
            Path("."),
            exists=True,
            file_okay=False,
            dir_okay=True,
            resolve_path=True,
            help="Workspace root to index.",
        ),
        config_path: Path | None = typer.Option(
            None,
            "--config",
            "-c",
            exists=True,
            dir_okay=False,
            help=(
                "Configuration file (defaults to "
                f"<root>/{USER_CONFIG_NAME})."
            ),
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
        log_dir: Path | None = typer.Option(
            None,
            "--log-dir",
            help="Also write JSON logs to this directory.",
        ),
        provider: str | None = typer.Option(
            None,
            "--provider",
            help=(
                "Embedding provider "
                "(openai/openai-compatible/ollama/gemini)."
            ),
        ),
        model: str | None = typer.Option(
            None,
            "--model",
            "-m",
            help="Embedding model identifier.",
        ),
        store: str | None = typer.Option(
            None,
            "--store",
            help="Vector store backend (qdrant/faiss).",
        ),
        collection: str | None = typer.Option(
            None,
            "--collection",
            help="Collection receiving the points.",
        ),
        concurrency: int | None = typer.Option(
            None,
            "--concurrency",
            min=1,
            help="Number of batches embedded at the same time.",
        ),
        json_output: bool = typer.Option(
            False,
            "--json",
            help="Emit the summary as JSON.",
        ),
        verbose: bool = typer.Option(
            False,
            "--verbose",
            "-v",
            help="List every indexed, removed and cancelled file.",
        ),
    ) -> None:
        """Embed changed files under ``root`` and sync the vector store.

        Example:
            >>> from typer.testing import CliRunner
            >>> result = CliRunner().invoke(create_app(), ["index", "--help"])
            >>> result.exit_code
            0
        """

        overrides = _cli_overrides(
            log_level=log_level,
            provider=provider,
            model=model,
            store=store,
            collection=collection,
            concurrency=concurrency,
        )
        try:
            config = _resolve_config(root, config_path, overrides)
        except ConfigurationError as exc:
            typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=2) from exc

        configure_logging(level=config.log_level, log_dir=log_dir)
        logger = get_logger(__name__, command="index")

        try:
            summary = asyncio.run(_run_with_interrupts(root, config, logger))
        except ConfigurationError as exc:
            field_hint = f" [{exc.field}]" if exc.field else ""
            typer.secho(
                f"Configuration error{field_hint}: {exc}",
                fg=typer.colors.RED,
            )
            logger.error(
                "index-aborted",
                reason="configuration",
                error=str(exc),
            )
            raise typer.Exit(code=2) from exc
        except StoreError as exc:
            typer.secho(
                f"Vector store error at {exc.address}: {exc}",
                fg=typer.colors.RED,
            )
            logger.error(
                "index-aborted",
                reason="store",
                address=exc.address,
                error=str(exc),
            )
            raise typer.Exit(code=1) from exc

        if json_output:
            typer.echo(json.dumps(summary.to_dict(), indent=2, sort_keys=True))
        else:
            _emit_summary(summary, verbose=verbose)

        if not summary.ok:
            raise typer.Exit(code=1)

    return app


__all__ = ["create_app"]
