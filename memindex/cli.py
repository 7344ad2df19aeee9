"""Command line interface for memindex."""

from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from dataclasses import asdict
from difflib import get_close_matches
from pathlib import Path
from typing import Iterator, Sequence

import click
import typer
from rich.console import Console
from rich.table import Table
from typer.core import TyperGroup

from . import __version__
from .config import DEFAULT_AGENT_ID, MemorySettings, load_settings
from .errors import MemoryIndexError
from .logging_setup import init_logger
from .manager import IndexStatus, ManagerRegistry, MemoryIndexManager
from .output import format_lines, format_snippet, format_status_icon
from .services.index_service import SyncProgress
from .services.search_service import SearchResult
from .text import Messages, Styles

console = Console()


class DefaultSearchGroup(TyperGroup):
    """Treat unknown subcommands as search queries."""

    def resolve_command(
        self,
        ctx: click.Context,
        args: list[str],
    ) -> tuple[str | None, click.Command | None, list[str]]:
        original_args = list(args)
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if not original_args:
                raise
            token = original_args[0]
            if token.startswith("-"):
                raise
            if get_close_matches(token, list(self.commands.keys()), cutoff=0.8):
                raise
            command = self.get_command(ctx, "search")
            if command is None:
                raise
            return "search", command, original_args


app = typer.Typer(
    help=Messages.APP_HELP,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
    cls=DefaultSearchGroup,
)

AGENT_OPTION = typer.Option(DEFAULT_AGENT_ID, "--agent", "-a", help=Messages.HELP_AGENT)
WORKSPACE_OPTION = typer.Option(None, "--workspace", "-w", help=Messages.HELP_WORKSPACE)
JSON_OPTION = typer.Option(False, "--json", help=Messages.HELP_JSON)
VERBOSE_OPTION = typer.Option(False, "--verbose", help=Messages.HELP_VERBOSE)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"memindex v{__version__}")
        raise typer.Exit()


def _styled(text: str, style: str) -> str:
    return f"[{style}]{text}[/{style}]"


def _load_cli_settings(agent: str) -> MemorySettings:
    try:
        settings = load_settings(agent)
    except (ValueError, OSError) as exc:
        console.print(_styled(Messages.ERROR_CONFIG_LOAD.format(reason=exc), Styles.ERROR))
        raise typer.Exit(code=1)
    # One-shot commands never keep background workers alive.
    settings.sync.watch = False
    settings.sync.interval_minutes = 0
    settings.sync.on_search = False
    settings.sync.on_session_start = False
    return settings


@contextmanager
def _open_manager(
    agent: str, workspace: Path | None, verbose: bool
) -> Iterator[MemoryIndexManager]:
    init_logger("DEBUG" if verbose else "WARNING")
    settings = _load_cli_settings(agent)
    registry = ManagerRegistry()
    try:
        manager = registry.get(agent, workspace or Path.cwd(), settings)
    except (MemoryIndexError, ValueError) as exc:
        console.print(_styled(str(exc), Styles.ERROR))
        raise typer.Exit(code=1)
    if manager is None:
        console.print(_styled(Messages.INFO_DISABLED.format(agent=agent), Styles.WARNING))
        raise typer.Exit(code=0)
    try:
        yield manager
    finally:
        registry.close_all()


def _run_sync(manager: MemoryIndexManager, *, force: bool, quiet: bool = False) -> None:
    if quiet:
        manager.sync(reason="cli", force=force)
        return
    with console.status(Messages.INFO_SYNC_RUNNING.format(agent=manager.agent_id)) as spinner:

        def report(update: SyncProgress) -> None:
            if update.label:
                spinner.update(_styled(update.label, Styles.INFO))

        manager.sync(reason="cli", force=force, progress=report)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    )
) -> None:
    """Global Typer callback for shared options."""
    return None


@app.command()
def status(
    agent: str = AGENT_OPTION,
    workspace: Path | None = WORKSPACE_OPTION,
    as_json: bool = JSON_OPTION,
    deep: bool = typer.Option(False, "--deep", help=Messages.HELP_DEEP),
    index: bool = typer.Option(False, "--index", help=Messages.HELP_STATUS_INDEX),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show the memory index state for an agent."""
    with _open_manager(agent, workspace, verbose) as manager:
        deep = deep or index
        vector_ok: bool | None = None
        embedding_ok: bool | None = None
        embedding_error: str | None = None
        if deep:
            vector_ok = manager.probe_vector_availability()
            probe = manager.probe_embedding_availability()
            embedding_ok, embedding_error = probe.ok, probe.error
            if index and manager.status().dirty:
                if not as_json:
                    console.print(_styled(Messages.INFO_STATUS_REINDEX, Styles.INFO))
                try:
                    _run_sync(manager, force=False, quiet=as_json)
                except MemoryIndexError as exc:
                    console.print(_styled(str(exc), Styles.ERROR))
                    raise typer.Exit(code=1)
        report = manager.status()
    if as_json:
        payload = asdict(report)
        if deep:
            payload["probes"] = {
                "vector": vector_ok,
                "embeddings": {"ok": embedding_ok, "error": embedding_error},
            }
        typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    _render_status(report)
    if deep:
        console.print(
            f"  {format_status_icon(vector_ok, console=console)} "
            f"[bold]{Messages.STATUS_LABEL_VECTOR}[/bold]"
        )
        line = (
            f"  {format_status_icon(embedding_ok, console=console)} "
            f"[bold]{Messages.STATUS_LABEL_EMBEDDINGS}[/bold]"
        )
        if embedding_error:
            line = f"{line} [dim]{embedding_error}[/dim]"
        console.print(line)


@app.command()
def index(
    agent: str = AGENT_OPTION,
    workspace: Path | None = WORKSPACE_OPTION,
    force: bool = typer.Option(False, "--force", "-f", help=Messages.HELP_FORCE),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Sync the memory index with the workspace."""
    with _open_manager(agent, workspace, verbose) as manager:
        try:
            _run_sync(manager, force=force)
        except MemoryIndexError as exc:
            console.print(_styled(str(exc), Styles.ERROR))
            raise typer.Exit(code=1)
        report = manager.status()
    console.print(
        _styled(
            Messages.INFO_INDEX_DONE.format(files=report.files, chunks=report.chunks),
            Styles.SUCCESS,
        )
    )


@app.command()
def search(
    query: str = typer.Argument(..., help=Messages.HELP_QUERY),
    agent: str = AGENT_OPTION,
    workspace: Path | None = WORKSPACE_OPTION,
    max_results: int | None = typer.Option(
        None, "--max-results", "-k", min=1, help=Messages.HELP_MAX_RESULTS
    ),
    min_score: float | None = typer.Option(
        None, "--min-score", min=0.0, max=1.0, help=Messages.HELP_MIN_SCORE
    ),
    as_json: bool = JSON_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Search agent memory."""
    with _open_manager(agent, workspace, verbose) as manager:
        try:
            if manager.status().dirty:
                _run_sync(manager, force=False, quiet=as_json)
            results = manager.search(query, max_results=max_results, min_score=min_score)
        except MemoryIndexError as exc:
            if as_json:
                typer.echo(str(exc), err=True)
            else:
                console.print(_styled(str(exc), Styles.ERROR))
            raise typer.Exit(code=1)
    if as_json:
        typer.echo(json.dumps([asdict(result) for result in results], ensure_ascii=False, indent=2))
        return
    if not results:
        console.print(_styled(Messages.INFO_NO_RESULTS, Styles.WARNING))
        raise typer.Exit(code=0)
    _render_results(results)


def _render_results(results: Sequence[SearchResult]) -> None:
    console.print(_styled(Messages.TABLE_TITLE, Styles.TITLE))
    table = Table(show_header=True, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_HEADER_INDEX, justify="right")
    table.add_column(Messages.TABLE_HEADER_SCORE, justify="right")
    table.add_column(Messages.TABLE_HEADER_PATH, overflow="fold")
    table.add_column(Messages.TABLE_HEADER_SNIPPET, overflow="fold")
    for idx, result in enumerate(results, start=1):
        table.add_row(
            str(idx),
            f"{result.score:.3f}",
            f"{result.path}:{format_lines(result.start_line, result.end_line)}",
            format_snippet(result.snippet),
        )
    console.print(table)


def _render_status(report: IndexStatus) -> None:
    console.print(_styled(Messages.STATUS_TITLE, Styles.TITLE))
    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column(overflow="fold")
    fallback = report.fallback
    rows = [
        ("Provider", f"{report.provider} ({report.model})"),
        ("Requested provider", report.requested_provider),
        ("Files", str(report.files)),
        ("Chunks", str(report.chunks)),
        ("Dirty", "yes" if report.dirty else "no"),
        ("Sources", ", ".join(report.sources)),
        ("Workspace", report.workspace_dir),
        ("Store", report.db_path),
        ("Cache entries", str(report.cache.get("entries", "-"))),
        ("Keyword search", "available" if report.fts.get("available") else "unavailable"),
        ("Vector dims", str(report.vector.get("dims") or "-")),
        ("Batch", "enabled" if report.batch.get("enabled") else "disabled"),
    ]
    if fallback:
        rows.append(("Fallback", f"from {fallback['from']}: {fallback['reason']}"))
    for label, value in rows:
        table.add_row(label, value)
    console.print(table)


def run(argv: list[str] | None = None) -> None:
    """Entry point wrapper allowing optional argument override."""
    args = list(argv) if argv is not None else sys.argv[1:]
    if argv is None:
        app()
    else:
        app(args=args)
