# === NAVMAP v1 ===
# {
#   "module": "CollectorKit.ToolManager.cli",
#   "purpose": "Typer CLI for scanning definitions, downloading tools, and assembling packages",
#   "sections": [
#     {"id": "clicontext", "name": "CliContext", "anchor": "class-clicontext", "kind": "class"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"},
#     {"id": "scan", "name": "scan_cmd", "anchor": "function-scan-cmd", "kind": "function"},
#     {"id": "tools", "name": "tools_cmd", "anchor": "function-tools-cmd", "kind": "function"},
#     {"id": "download", "name": "download_cmd", "anchor": "function-download-cmd", "kind": "function"},
#     {"id": "package", "name": "package_cmd", "anchor": "function-package-cmd", "kind": "function"},
#     {"id": "export", "name": "export_cmd", "anchor": "function-export-cmd", "kind": "function"},
#     {"id": "verify", "name": "verify_cmd", "anchor": "function-verify-cmd", "kind": "function"},
#     {"id": "config-show", "name": "config_show", "anchor": "function-config-show", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command-line interface for the artifact tool manager.

Global options go before the subcommand::

    toolmgr --config toolmgr.yaml -v download ./artifacts
    toolmgr package ./artifacts ./out --artifact Windows.Triage --zip
    toolmgr export ./artifacts --format json --output mapping.json

Every command rescans the definitions it is given; tool state is recovered
from the on-disk cache, so commands can be run independently.
"""

from __future__ import annotations

import contextlib
import json
import signal
import threading
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn

from . import __version__
from .cancellation import CancellationToken
from .downloader import download, mark_cached
from .errors import ToolManagerError
from .exporter import EXPORT_FORMATS, export_mapping, export_tool_inventory
from .formatters import (
    ERROR_TABLE_HEADERS,
    OUTCOME_TABLE_HEADERS,
    TOOL_TABLE_HEADERS,
    format_error_rows,
    format_outcome_rows,
    format_table,
    format_tool_rows,
)
from .logging_utils import setup_logging
from .package import PackageOptions, assemble_package, verify_package
from .scanner import ScanResult, scan
from .settings import ResolvedConfig, load_config

_console = Console()


class CliContext:
    """Shared state for one CLI invocation: configuration, logger, and console."""

    def __init__(self, config: ResolvedConfig, verbosity: int = 0) -> None:
        self.config = config
        self.verbosity = verbosity
        self.console = _console
        logging_config = config.defaults.logging
        level = "DEBUG" if verbosity >= 2 else ("INFO" if verbosity == 1 else logging_config.level)
        self.logger = setup_logging(
            level=level,
            retention_days=logging_config.retention_days,
            max_log_size_mb=logging_config.max_log_size_mb,
            log_dir=logging_config.log_dir,
            console=verbosity > 0,
        )

    @property
    def cache_dir(self) -> Path:
        return self.config.defaults.cache_dir

    def print_table(self, headers, rows) -> None:
        if rows:
            self.console.print(format_table(headers, rows), markup=False, highlight=False)

    def fail(self, exc: ToolManagerError) -> typer.Exit:
        self.console.print(f"[red]✗ {exc.kind.value}:[/red] {exc}", highlight=False)
        return typer.Exit(1)


app = typer.Typer(
    name="toolmgr",
    help="Artifact tool manager - collect the third-party tools artifact definitions depend on",
    no_args_is_help=True,
)
config_app = typer.Typer(name="config", help="Inspect the effective configuration")
app.add_typer(config_app, name="config")

_context: Optional[CliContext] = None


def get_context() -> CliContext:
    if _context is None:
        raise RuntimeError("CLI context not initialized")
    return _context


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"toolmgr {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", envvar="TOOLMGR_CONFIG", help="Path to a YAML configuration file"
    ),
    verbosity: int = typer.Option(
        0, "--verbose", "-v", count=True, help="Increase verbosity (-v for INFO, -vv for DEBUG)"
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Scan artifact definitions, download their tools, and assemble offline packages."""

    global _context

    try:
        resolved = load_config(config)
    except ToolManagerError as exc:
        _console.print(f"[red]Error loading configuration: {exc}[/red]", highlight=False)
        raise typer.Exit(2) from exc
    _context = CliContext(resolved, verbosity=verbosity)


def _scan(ctx: CliContext, path: Path, include: Optional[List[str]] = None) -> ScanResult:
    try:
        return scan(path, include or None, config=ctx.config, logger=ctx.logger)
    except ToolManagerError as exc:
        raise ctx.fail(exc) from exc


@contextlib.contextmanager
def _cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    """Turn Ctrl-C into a graceful cancellation while downloads are running."""

    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum, frame):  # pragma: no cover - interactive only
        if token.is_cancelled():
            signal.signal(signal.SIGINT, previous)
            raise KeyboardInterrupt
        _console.print("[yellow]Cancelling: finishing in-flight downloads...[/yellow]")
        token.cancel()

    signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _run_download(ctx: CliContext, result: ScanResult, concurrency: Optional[int], names=None):
    token = CancellationToken()
    pending = [
        tool for tool in result.tool_database.sorted_tools()
        if names is None or tool.name.casefold() in {name.casefold() for name in names}
    ]
    with Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=ctx.console,
        transient=True,
    ) as progress:
        task = progress.add_task("Downloading tools", total=len(pending))
        with _cancel_on_interrupt(token):
            return download(
                result.tool_database,
                ctx.cache_dir,
                concurrency,
                config=ctx.config,
                names=names,
                cancellation_token=token,
                progress=lambda _outcome: progress.advance(task),
                logger=ctx.logger,
            )


@app.command("scan")
def scan_cmd(
    path: Path = typer.Argument(..., help="Artifact definition directory or file"),
    include: Optional[List[str]] = typer.Option(
        None, "--include", "-i", help="Glob of definition files to include (repeatable)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Emit the scan summary as JSON"),
) -> None:
    """Parse artifact definitions and report the tools they reference."""

    ctx = get_context()
    result = _scan(ctx, path, include)
    if as_json:
        payload = {
            "root": str(result.root),
            "artifacts": [
                {"name": artifact.name, "path": artifact.relative_path, "tools": artifact.tool_names}
                for artifact in result.artifacts
            ],
            "tools": len(result.tool_database),
            "errors": [error.to_dict() for error in result.errors],
            "conflicts": [conflict.to_recorded_error().to_dict() for conflict in result.conflicts],
        }
        typer.echo(json.dumps(payload, indent=2))
        return
    ctx.console.print(f"[bold]{result.summary()}[/bold]", highlight=False)
    ctx.print_table(ERROR_TABLE_HEADERS, format_error_rows(result.errors))
    ctx.print_table(
        ERROR_TABLE_HEADERS,
        format_error_rows(conflict.to_recorded_error() for conflict in result.conflicts),
    )


@app.command("tools")
def tools_cmd(
    path: Path = typer.Argument(..., help="Artifact definition directory or file"),
) -> None:
    """List every referenced tool with its source and cache status."""

    ctx = get_context()
    result = _scan(ctx, path)
    mark_cached(result.tool_database, ctx.cache_dir, logger=ctx.logger)
    ctx.print_table(TOOL_TABLE_HEADERS, format_tool_rows(result.tool_database.sorted_tools()))
    ctx.console.print(f"{len(result.tool_database)} tools", highlight=False)


@app.command("download")
def download_cmd(
    path: Path = typer.Argument(..., help="Artifact definition directory or file"),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-j", min=1, max=16, help="Parallel downloads"
    ),
    tool: Optional[List[str]] = typer.Option(
        None, "--tool", "-t", help="Only download these tools (repeatable)"
    ),
) -> None:
    """Download every tool referenced by the definitions into the cache."""

    ctx = get_context()
    result = _scan(ctx, path)
    report = _run_download(ctx, result, concurrency, names=tool or None)
    ctx.print_table(OUTCOME_TABLE_HEADERS, format_outcome_rows(report))
    colour = "red" if report.failed else "green"
    ctx.console.print(f"[{colour}]{report.summary()}[/{colour}]", highlight=False)
    if report.failed or report.cancelled:
        raise typer.Exit(1)


@app.command("package")
def package_cmd(
    path: Path = typer.Argument(..., help="Artifact definition directory or file"),
    output_dir: Path = typer.Argument(..., help="Package output directory"),
    artifact: Optional[List[str]] = typer.Option(
        None, "--artifact", "-a", help="Include only these artifacts (repeatable)"
    ),
    compress: Optional[bool] = typer.Option(
        None, "--zip/--no-zip", help="Also write a deterministic zip archive"
    ),
    archive: Optional[Path] = typer.Option(None, "--archive", help="Zip destination"),
    offline: bool = typer.Option(
        False, "--offline", help="Use cached tools only; never touch the network"
    ),
) -> None:
    """Assemble a deployable package of artifacts and their cached tools."""

    ctx = get_context()
    result = _scan(ctx, path)
    if offline:
        mark_cached(result.tool_database, ctx.cache_dir, logger=ctx.logger)
    else:
        needed: Optional[List[str]] = None
        if artifact:
            needed = [tool.name for tool in result.tool_database.needed_by(artifact)]
        _run_download(ctx, result, None, names=needed)
    options = PackageOptions(artifact_names=artifact or None, compress=compress, archive_path=archive)
    try:
        assembled = assemble_package(
            result, ctx.cache_dir, output_dir, options, config=ctx.config, logger=ctx.logger
        )
    except ToolManagerError as exc:
        raise ctx.fail(exc) from exc
    ctx.print_table(ERROR_TABLE_HEADERS, format_error_rows(assembled.errors))
    colour = "yellow" if assembled.manifest.missing_tools else "green"
    ctx.console.print(f"[{colour}]{assembled.summary()}[/{colour}]", highlight=False)
    ctx.console.print(f"Manifest: {assembled.manifest_path}", highlight=False)


@app.command("export")
def export_cmd(
    path: Path = typer.Argument(..., help="Artifact definition directory or file"),
    format_output: str = typer.Option(
        "csv", "--format", "-f", help=f"One of: {', '.join(EXPORT_FORMATS)}"
    ),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file"),
    inventory: bool = typer.Option(
        False, "--inventory", help="Export one row per tool instead of the mapping"
    ),
) -> None:
    """Export the artifact-to-tool mapping (or the tool inventory)."""

    ctx = get_context()
    result = _scan(ctx, path)
    if inventory:
        mark_cached(result.tool_database, ctx.cache_dir, logger=ctx.logger)
    try:
        data = (export_tool_inventory if inventory else export_mapping)(result, format_output)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--format") from exc
    if output is None:
        typer.echo(data.decode("utf-8"), nl=False)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(data)
    ctx.console.print(f"Wrote {output}", highlight=False)


@app.command("verify")
def verify_cmd(
    output_dir: Path = typer.Argument(..., help="Assembled package directory"),
) -> None:
    """Re-hash every packaged tool against the manifest."""

    ctx = get_context()
    try:
        problems = verify_package(output_dir)
    except ToolManagerError as exc:
        raise ctx.fail(exc) from exc
    for problem in problems:
        ctx.console.print(f"[red]✗[/red] {problem}", highlight=False)
    if problems:
        raise typer.Exit(1)
    ctx.console.print("[green]✓ Package intact[/green]")


@config_app.command("show")
def config_show(
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of YAML-like text"),
) -> None:
    """Display the effective configuration (secrets redacted)."""

    ctx = get_context()
    payload = ctx.config.defaults.model_dump(mode="json")
    if payload["http"].get("github_token"):
        payload["http"]["github_token"] = "***redacted***"
    if as_json:
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return
    source = ctx.config.source or "defaults"
    ctx.console.print(f"[bold]Configuration[/bold] ({source}, hash {ctx.config.config_hash()})")
    for section, values in payload.items():
        if isinstance(values, dict):
            ctx.console.print(f"[cyan]{section}[/cyan]")
            for key, value in values.items():
                ctx.console.print(f"  {key}: {value}", markup=False, highlight=False)
        else:
            ctx.console.print(f"[cyan]{section}[/cyan]: {values}", highlight=False)


__all__ = ["app", "CliContext", "get_context", "main"]
