"""Formatting helpers for turning scan, download, and package results into tables.

The CLI renders compact tables for each phase.  The header schemas live here
so documentation tooling and the CLI share the same column order.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import RecordedError
from .models import DownloadReport, Tool

TOOL_TABLE_HEADERS: Tuple[str, ...] = ("tool", "version", "status", "used_by", "source")
OUTCOME_TABLE_HEADERS: Tuple[str, ...] = ("tool", "status", "attempts", "bytes", "sha256", "error")
ERROR_TABLE_HEADERS: Tuple[str, ...] = ("kind", "subject", "message")

__all__ = [
    "ERROR_TABLE_HEADERS",
    "OUTCOME_TABLE_HEADERS",
    "TOOL_TABLE_HEADERS",
    "format_bytes",
    "format_error_rows",
    "format_outcome_rows",
    "format_table",
    "format_tool_rows",
]


def format_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    """Render a padded ASCII table."""

    column_widths = [len(header) for header in headers]
    for row in rows:
        for index, cell in enumerate(row):
            column_widths[index] = max(column_widths[index], len(cell))

    def _format_row(values: Sequence[str]) -> str:
        return " | ".join(value.ljust(column_widths[index]) for index, value in enumerate(values))

    separator = "-+-".join("-" * width for width in column_widths)
    lines = [_format_row(headers), separator]
    lines.extend(_format_row(row) for row in rows)
    return "\n".join(lines)


def format_bytes(num: int) -> str:
    """Return a human-readable representation of ``num`` bytes."""

    value = float(num)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def _short_hash(value: Optional[str]) -> str:
    if not value:
        return ""
    return f"{value[:12]}…" if len(value) > 12 else value


def format_tool_rows(tools: Iterable[Tool]) -> List[Tuple[str, str, str, str, str]]:
    rows = []
    for tool in tools:
        rows.append(
            (
                tool.name,
                tool.version or "",
                tool.download_status.value,
                ", ".join(sorted(tool.used_by_artifacts, key=str.casefold)),
                tool.canonical_url or tool.github_project or "",
            )
        )
    return rows


def format_outcome_rows(report: DownloadReport) -> List[Tuple[str, ...]]:
    """Rows for every dispatched tool followed by the ones never attempted."""

    rows: List[Tuple[str, ...]] = []
    for outcome in sorted(report.outcomes, key=lambda item: item.name.casefold()):
        rows.append(
            (
                outcome.name,
                outcome.status.value,
                str(outcome.attempts),
                format_bytes(outcome.bytes_downloaded) if outcome.bytes_downloaded else "",
                _short_hash(outcome.actual_hash),
                outcome.error.message if outcome.error else "",
            )
        )
    for name in report.not_attempted:
        rows.append((name, "NotAttempted", "0", "", "", ""))
    return rows


def format_error_rows(errors: Iterable[RecordedError]) -> List[Tuple[str, str, str]]:
    return [(error.kind.value, error.subject, error.message) for error in errors]
