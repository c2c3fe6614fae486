"""
Tool Download Manager

Fetches every pending tool in a :class:`~CollectorKit.ToolManager.registry.ToolRegistry`
into the on-disk cache with bounded concurrency, integrity verification,
retries, and idempotent caching.

Each tool goes through the same steps:

1. If its cache file already exists and hashes to the expected digest (or to
   the digest recorded by an earlier run) the tool is marked ``Skipped`` and
   no request is made.
2. Otherwise it is marked ``InProgress``, release references are resolved to
   a URL, and the body is streamed into a ``.part`` file next to the target
   while being hashed.
3. Only a fully received body whose digest matches is renamed onto the final
   path (``Verified``); anything else is discarded (``Failed``).

The dispatcher thread is the only consumer of the pending queue, so every
tool is owned by exactly one worker and its fields need no locking.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Collection, Dict, List, Optional, Tuple

import httpx

from .cancellation import CancellationToken
from .checksums import ExpectedChecksum, StreamingHasher, file_digest, parse_expected_hash
from .errors import (
    HashMismatchError,
    NetworkError,
    RecordedError,
    StorageError,
    ToolManagerError,
    UnresolvedToolError,
)
from .models import DownloadReport, DownloadStatus, Tool, ToolOutcome
from .net import get_http_client
from .registry import ToolRegistry
from .resolvers import resolve_github_release
from .retry import create_download_retry_policy, network_error_from_httpx
from .settings import DownloadConfiguration, ResolvedConfig, get_default_config
from .storage import (
    META_SUFFIX,
    cache_dir_for,
    cache_path_for,
    read_sidecar,
    utc_timestamp,
    write_sidecar,
)

__all__ = ["download", "fetch_tool", "find_cached_file", "mark_cached"]

ProgressCallback = Callable[[ToolOutcome], None]


def _digest_matches(
    path: Path,
    expected: Optional[ExpectedChecksum],
    recorded_sha256: Optional[str],
) -> Optional[str]:
    """Return the file's SHA-256 when it satisfies ``expected`` or ``recorded_sha256``."""

    sha256 = file_digest(path, "sha256")
    if expected is not None:
        if expected.algorithm == "sha256":
            return sha256 if expected.matches(sha256) else None
        return sha256 if expected.matches(file_digest(path, expected.algorithm)) else None
    if recorded_sha256 and recorded_sha256.strip().lower() == sha256:
        return sha256
    return None


def _candidate_paths(tool: Tool, cache_dir: Path) -> List[Path]:
    if tool.canonical_url:
        return [cache_path_for(cache_dir, tool.name, tool.version, tool.canonical_url)]
    if not tool.github_project:
        return []
    version_dir = cache_dir_for(cache_dir, tool.name, tool.version)
    if not version_dir.is_dir():
        return []
    project = tool.github_project.casefold()
    candidates = []
    for sidecar in sorted(version_dir.glob(f"*{META_SUFFIX}")):
        target = sidecar.with_name(sidecar.name[: -len(META_SUFFIX)])
        metadata = read_sidecar(target) or {}
        if str(metadata.get("github_project") or "").casefold() == project:
            candidates.append(target)
    return candidates


def find_cached_file(
    tool: Tool,
    cache_dir: Path,
    expected: Optional[ExpectedChecksum] = None,
) -> Optional[Tuple[Path, str]]:
    """Return ``(path, sha256)`` of a valid cached copy of ``tool``, if any.

    A copy is valid when it matches the expected digest, or when no digest is
    declared and it matches the SHA-256 recorded on the tool or in the sidecar.
    Files with nothing to compare against are never trusted.
    """

    for candidate in _candidate_paths(tool, cache_dir):
        if not candidate.is_file():
            continue
        sidecar = read_sidecar(candidate) or {}
        recorded = tool.actual_hash or sidecar.get("sha256")
        try:
            sha256 = _digest_matches(candidate, expected, recorded)
        except OSError:
            continue
        if sha256 is not None:
            return candidate, sha256
    return None


def mark_cached(
    registry: ToolRegistry,
    cache_dir: Path,
    *,
    logger: Optional[logging.Logger] = None,
) -> List[str]:
    """Mark pending tools with a valid cached copy as ``Skipped`` without any network I/O.

    Tools with a malformed expected hash or no valid copy stay ``Pending``.
    Returns the names of the tools that were marked.
    """

    log = logger or logging.getLogger("CollectorKit.ToolManager")
    marked: List[str] = []
    for tool in registry.sorted_tools():
        if tool.download_status is not DownloadStatus.PENDING:
            continue
        try:
            expected = parse_expected_hash(tool.expected_hash, context=f"{tool.name} expected_hash")
        except ToolManagerError:
            continue
        cached = find_cached_file(tool, Path(cache_dir), expected)
        if cached is None:
            continue
        tool.local_path, tool.actual_hash = cached
        tool.transition(DownloadStatus.SKIPPED)
        marked.append(tool.name)
    log.info(
        "cache inspected",
        extra={"stage": "cache", "cached": len(marked), "tools": len(registry)},
    )
    return marked


def _content_length(response: httpx.Response) -> Optional[int]:
    if response.headers.get("Content-Encoding", "identity").lower() != "identity":
        return None
    value = response.headers.get("Content-Length")
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _stream_to_cache(
    *,
    client: httpx.Client,
    url: str,
    target: Path,
    expected: Optional[ExpectedChecksum],
    http_config: DownloadConfiguration,
    cancellation_token: Optional[CancellationToken],
) -> StreamingHasher:
    """Download ``url`` once into ``target``; the final path is only written on success."""

    target.parent.mkdir(parents=True, exist_ok=True)
    hasher = StreamingHasher(expected)
    fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".part")
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            try:
                with client.stream("GET", url, headers=http_config.request_headers()) as response:
                    response.raise_for_status()
                    declared_length = _content_length(response)
                    for chunk in response.iter_bytes(http_config.chunk_size):
                        if cancellation_token is not None and cancellation_token.should_abort_transfer():
                            raise NetworkError(f"Download of {url} was cancelled", url=url)
                        handle.write(chunk)
                        hasher.update(chunk)
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                raise network_error_from_httpx(exc, url) from exc
            if declared_length is not None and hasher.bytes_seen != declared_length:
                raise NetworkError(
                    f"Truncated body from {url}: {hasher.bytes_seen} of {declared_length} bytes",
                    url=url,
                    retryable=True,
                )
            handle.flush()
            os.fsync(handle.fileno())
        if expected is not None and not hasher.verified():
            raise HashMismatchError(
                f"{expected.algorithm} mismatch for {url}",
                expected=expected.value,
                actual=hasher.digest_for(expected.algorithm),
                algorithm=expected.algorithm,
            )
        try:
            os.replace(temp_path, target)
        except OSError as exc:
            raise StorageError(f"Failed to finalise {target}: {exc}", path=str(target)) from exc
    finally:
        temp_path.unlink(missing_ok=True)
    return hasher


def fetch_tool(
    tool: Tool,
    cache_dir: Path,
    *,
    client: httpx.Client,
    http_config: DownloadConfiguration,
    logger: logging.Logger,
    sleep: Optional[Callable[[float], None]] = None,
    cancellation_token: Optional[CancellationToken] = None,
) -> ToolOutcome:
    """Bring one pending ``tool`` into the cache; never raises for download failures."""

    outcome = ToolOutcome(name=tool.name, status=tool.download_status)
    started = time.monotonic()
    try:
        expected = parse_expected_hash(tool.expected_hash, context=f"{tool.name} expected_hash")
    except ToolManagerError as exc:
        tool.transition(DownloadStatus.IN_PROGRESS)
        return _fail(tool, outcome, exc, logger)

    cached = find_cached_file(tool, cache_dir, expected)
    if cached is not None:
        tool.local_path, tool.actual_hash = cached
        tool.transition(DownloadStatus.SKIPPED)
        outcome.status = tool.download_status
        outcome.local_path, outcome.actual_hash = cached
        logger.info(
            "cache hit",
            extra={"stage": "download", "tool": tool.name, "path": str(cached[0])},
        )
        return outcome

    tool.transition(DownloadStatus.IN_PROGRESS)
    outcome.status = tool.download_status

    def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
        logger.warning(
            "download retrying",
            extra={
                "stage": "download",
                "tool": tool.name,
                "attempt": attempt,
                "retry_delay_sec": round(delay, 2),
                "error": str(exc),
            },
        )

    policy = create_download_retry_policy(
        max_retries=http_config.max_retries,
        backoff_factor=http_config.backoff_factor,
        sleep=sleep,
        on_retry=_on_retry,
    )

    try:
        url = tool.canonical_url
        tag: Optional[str] = None
        if not url and tool.github_project:
            asset = policy(
                resolve_github_release,
                tool,
                client=client,
                http_config=http_config,
                logger=logger,
            )
            url, tag = asset.url, asset.tag
        if not url:
            raise UnresolvedToolError(
                f"Tool {tool.name} has no download URL or release source", tool=tool.name
            )
        target = cache_path_for(cache_dir, tool.name, tool.version, url)

        def _attempt() -> StreamingHasher:
            outcome.attempts += 1
            return _stream_to_cache(
                client=client,
                url=url,
                target=target,
                expected=expected,
                http_config=http_config,
                cancellation_token=cancellation_token,
            )

        hasher = policy(_attempt)
        write_sidecar(
            target,
            {
                "name": tool.name,
                "version": tool.version,
                "url": url,
                "sha256": hasher.sha256,
                "size": hasher.bytes_seen,
                "github_project": tool.github_project,
                "release_tag": tag,
                "downloaded_at": utc_timestamp(),
            },
        )
    except (ToolManagerError, OSError) as exc:
        return _fail(tool, outcome, exc, logger)

    tool.local_path = target
    tool.actual_hash = hasher.sha256
    tool.transition(DownloadStatus.VERIFIED)
    outcome.status = tool.download_status
    outcome.local_path = target
    outcome.actual_hash = hasher.sha256
    outcome.bytes_downloaded = hasher.bytes_seen
    logger.info(
        "download complete",
        extra={
            "stage": "download",
            "tool": tool.name,
            "bytes": hasher.bytes_seen,
            "sha256": hasher.sha256,
            "attempts": outcome.attempts,
            "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
        },
    )
    return outcome


def _fail(
    tool: Tool,
    outcome: ToolOutcome,
    exc: BaseException,
    logger: logging.Logger,
) -> ToolOutcome:
    error = RecordedError.from_exception(tool.name, exc)
    tool.error = error
    tool.transition(DownloadStatus.FAILED)
    outcome.status = tool.download_status
    outcome.error = error
    logger.error(
        "download failed",
        extra={
            "stage": "download",
            "tool": tool.name,
            "kind": error.kind.value,
            "error": error.message,
            "attempts": outcome.attempts,
        },
    )
    return outcome


def download(
    registry: ToolRegistry,
    cache_dir: Optional[Path] = None,
    max_concurrency: Optional[int] = None,
    *,
    config: Optional[ResolvedConfig] = None,
    client: Optional[httpx.Client] = None,
    names: Optional[Collection[str]] = None,
    cancellation_token: Optional[CancellationToken] = None,
    progress: Optional[ProgressCallback] = None,
    logger: Optional[logging.Logger] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> DownloadReport:
    """Download every ``Pending`` tool in ``registry`` into ``cache_dir``.

    Args:
        registry: Registry built by a scan; tool status fields are updated in place.
        cache_dir: Cache root; defaults to the configured ``cache_dir``.
        max_concurrency: Worker count; defaults to ``http.concurrent_downloads``.
        config: Optional configuration; defaults to :func:`get_default_config`.
        client: HTTPX client; defaults to the shared client from :mod:`.net`.
        names: Restrict the run to these tool names (case-insensitive).
        cancellation_token: Stops dispatching new tools once cancelled.
        progress: Called on the dispatching thread after each tool finishes.
        logger: Logger for structured download telemetry.
        sleep: Backoff sleep function (tests pass a no-op).

    Returns:
        DownloadReport with one outcome per dispatched tool.  Individual
        failures are reported, never raised.
    """

    active_config = config or get_default_config()
    http_config = active_config.defaults.http
    root = Path(cache_dir or active_config.defaults.cache_dir).expanduser()
    log = logger or logging.getLogger("CollectorKit.ToolManager")
    http_client = client or get_http_client(http_config)
    workers = max(1, max_concurrency or http_config.concurrent_downloads)

    wanted = {name.casefold() for name in names} if names is not None else None
    queue: List[Tool] = [
        tool
        for tool in registry.sorted_tools()
        if tool.download_status is DownloadStatus.PENDING
        and (wanted is None or tool.name.casefold() in wanted)
    ]
    report = DownloadReport()
    log.info(
        "starting download batch",
        extra={"stage": "batch", "workers": workers, "pending": len(queue), "cache_dir": str(root)},
    )

    futures: Dict[Future[ToolOutcome], Tool] = {}
    position = 0

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="toolmgr-dl") as executor:
        while position < len(queue) or futures:
            while position < len(queue) and len(futures) < workers:
                if cancellation_token is not None and cancellation_token.is_cancelled():
                    break
                tool = queue[position]
                position += 1
                future = executor.submit(
                    fetch_tool,
                    tool,
                    root,
                    client=http_client,
                    http_config=http_config,
                    logger=log,
                    sleep=sleep,
                    cancellation_token=cancellation_token,
                )
                futures[future] = tool

            if not futures:
                break

            done, _ = wait(list(futures), return_when=FIRST_COMPLETED)
            for future in done:
                tool = futures.pop(future)
                try:
                    outcome = future.result()
                except Exception as exc:  # pylint: disable=broad-except
                    error = RecordedError.from_exception(tool.name, exc)
                    tool.error = error
                    if tool.download_status is DownloadStatus.IN_PROGRESS:
                        tool.transition(DownloadStatus.FAILED)
                    outcome = ToolOutcome(name=tool.name, status=tool.download_status, error=error)
                    log.error(
                        "unexpected download error",
                        extra={"stage": "download", "tool": tool.name, "error": str(exc)},
                    )
                report.outcomes.append(outcome)
                if progress is not None:
                    progress(outcome)

    report.not_attempted = [tool.name for tool in queue[position:]]
    report.cancelled = bool(cancellation_token is not None and cancellation_token.is_cancelled())
    report.finished_at = datetime.now(timezone.utc)
    log.info(
        report.summary(),
        extra={
            "stage": "batch",
            "verified": len(report.verified),
            "skipped": len(report.skipped),
            "failed": len(report.failed),
            "not_attempted": len(report.not_attempted),
        },
    )
    return report
