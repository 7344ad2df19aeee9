"""Helpers for formatting CLI output safely across terminals."""

from __future__ import annotations

import sys

from rich.console import Console


def _encoding_supports(text: str, encoding: str | None) -> bool:
    if not encoding:
        return False
    try:
        text.encode(encoding)
    except (LookupError, UnicodeEncodeError):
        return False
    return True


def supports_unicode_output(console: Console | None = None) -> bool:
    sample = "✓✗"
    if console is not None and _encoding_supports(sample, console.encoding):
        return True
    return _encoding_supports(sample, sys.stdout.encoding)


def format_status_icon(passed: bool | None, console: Console | None = None) -> str:
    if passed is None:
        return "[dim]-[/dim]"
    if supports_unicode_output(console):
        return "[green]✓[/green]" if passed else "[red]✗[/red]"
    return "[green]OK[/green]" if passed else "[red]X[/red]"


def format_lines(start_line: int | None, end_line: int | None) -> str:
    if start_line is None:
        return "-"
    if end_line is None or end_line <= start_line:
        return f"L{start_line}"
    return f"L{start_line}-{end_line}"


def format_snippet(text: str | None, limit: int = 80) -> str:
    if not text:
        return "-"
    snippet = " ".join(text.split())
    if len(snippet) <= limit:
        return snippet
    return snippet[: limit - 3].rstrip() + "..."
