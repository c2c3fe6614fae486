"""Filesystem helpers: safe names, atomic writes, and the tool cache layout.

The cache layout ``<cache_dir>/<tool>/<version>/<filename>`` is reused across
runs and by external tooling, so every component derives paths through
:func:`cache_path_for` instead of joining segments by hand.  Each cached file
gets a ``<filename>.meta.json`` sidecar recording where it came from and its
SHA-256 digest.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse

from .errors import StorageError

__all__ = [
    "LATEST_VERSION",
    "META_SUFFIX",
    "cache_dir_for",
    "cache_path_for",
    "copy_file",
    "read_sidecar",
    "sanitize_filename",
    "url_basename",
    "utc_timestamp",
    "write_json_atomic",
    "write_sidecar",
]

LATEST_VERSION = "latest"
META_SUFFIX = ".meta.json"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._+-]")


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Return an ISO-8601 UTC timestamp with a trailing ``Z``."""

    value = moment or datetime.now(timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def sanitize_filename(filename: str, *, fallback: str = "tool") -> str:
    """Sanitize path components to prevent directory traversal and unsafe characters."""

    original = filename
    safe = filename.replace(os.sep, "_").replace("/", "_").replace("\\", "_")
    safe = _UNSAFE_CHARS.sub("_", safe)
    safe = safe.strip("._") or fallback
    if len(safe) > 255:
        safe = safe[:255]
    if safe != original:
        logging.getLogger("CollectorKit.ToolManager").debug(
            "sanitized unsafe filename",
            extra={"stage": "sanitize", "original": original, "sanitized": safe},
        )
    return safe


def url_basename(url: str) -> str:
    """Return the last path segment of ``url`` (percent-decoded)."""

    path = unquote(urlparse(url).path)
    name = path.rstrip("/").rsplit("/", 1)[-1]
    return name


def cache_dir_for(cache_dir: Path, name: str, version: Optional[str]) -> Path:
    """Directory holding every cached file for ``name`` at ``version``."""

    return (
        Path(cache_dir)
        / sanitize_filename(name)
        / sanitize_filename(version or LATEST_VERSION, fallback=LATEST_VERSION)
    )


def cache_path_for(cache_dir: Path, name: str, version: Optional[str], url: str) -> Path:
    """Deterministic cache location for a tool binary downloaded from ``url``."""

    filename = sanitize_filename(url_basename(url), fallback=sanitize_filename(name))
    return cache_dir_for(cache_dir, name, version) / filename


def write_json_atomic(path: Path, payload: object) -> Path:
    """Atomically persist ``payload`` as JSON to ``path``."""

    resolved = path.expanduser()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=str(resolved.parent), delete=False, suffix=".tmp"
    )
    temp_path = Path(handle.name)
    try:
        with handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.write("\n")
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except (AttributeError, OSError):
                pass
        temp_path.replace(resolved)
    finally:
        # No-op once the rename has succeeded.
        temp_path.unlink(missing_ok=True)
    return resolved


def write_sidecar(file_path: Path, metadata: Dict[str, Any]) -> Path:
    """Write the ``.meta.json`` sidecar describing a cached file."""

    return write_json_atomic(file_path.with_name(file_path.name + META_SUFFIX), metadata)


def read_sidecar(file_path: Path) -> Optional[Dict[str, Any]]:
    """Return sidecar metadata for ``file_path`` or ``None`` when absent or unreadable."""

    sidecar = file_path.with_name(file_path.name + META_SUFFIX)
    try:
        payload = json.loads(sidecar.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logging.getLogger("CollectorKit.ToolManager").warning(
            "ignoring unreadable cache sidecar",
            extra={"stage": "cache", "sidecar": str(sidecar), "error": str(exc)},
        )
        return None
    return payload if isinstance(payload, dict) else None


def copy_file(source: Path, destination: Path) -> Path:
    """Copy ``source`` to ``destination`` creating parents; wrap OS errors."""

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
    except OSError as exc:
        raise StorageError(
            f"Failed to copy {source} to {destination}: {exc}",
            source=str(source),
            destination=str(destination),
        ) from exc
    return destination
