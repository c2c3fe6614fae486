"""Package assembly: copy artifacts and their tools into a deployable layout.

An assembled package looks like::

    <output_dir>/
        artifacts/<relative path of each definition>
        tools/<ToolName>/<filename>
        manifest.json

``manifest.json`` is the single source of truth for what the package holds.
It is removed before anything else is touched and written last (atomically),
so a directory without a manifest is by definition incomplete.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import jsonschema

from .checksums import file_digest
from .errors import (
    AssemblyCollisionError,
    ErrorKind,
    NotFoundError,
    ParseError,
    RecordedError,
    StorageError,
    ToolManagerError,
)
from .models import Artifact, ManifestTool, PackageManifest, Tool
from .scanner import ScanResult
from .settings import ResolvedConfig, get_default_config
from .storage import copy_file, sanitize_filename, utc_timestamp, write_json_atomic

__all__ = [
    "MANIFEST_NAME",
    "MANIFEST_SCHEMA",
    "AssemblyResult",
    "PackageOptions",
    "assemble_package",
    "load_manifest",
    "verify_package",
    "write_archive",
]

MANIFEST_NAME = "manifest.json"
ARTIFACTS_DIR = "artifacts"
TOOLS_DIR = "tools"

# Earliest timestamp a zip entry can carry.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

MANIFEST_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Collector Package Manifest",
    "type": "object",
    "required": ["artifacts", "tools", "missingTools", "createdAt"],
    "properties": {
        "artifacts": {"type": "array", "items": {"type": "string"}},
        "tools": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "path"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "version": {"type": ["string", "null"]},
                    "hash": {"type": ["string", "null"], "pattern": "^[0-9a-f]{64}$"},
                    "path": {"type": "string", "pattern": "^tools/"},
                },
            },
        },
        "missingTools": {"type": "array", "items": {"type": "string"}},
        "createdAt": {"type": "string"},
    },
}


@dataclass
class PackageOptions:
    """Caller choices for one assembly run.

    Attributes:
        artifact_names: Artifacts to include; ``None`` includes every scanned artifact.
        compress: Also write a zip archive; ``None`` uses ``package.compress`` from config.
        archive_path: Zip destination; defaults to ``<output_dir>.zip``.
    """

    artifact_names: Optional[Sequence[str]] = None
    compress: Optional[bool] = None
    archive_path: Optional[Path] = None


@dataclass
class AssemblyResult:
    output_dir: Path
    manifest: PackageManifest
    manifest_path: Path
    archive_path: Optional[Path] = None
    errors: List[RecordedError] = field(default_factory=list)

    def summary(self) -> str:
        text = (
            f"{len(self.manifest.artifacts)} artifacts, {len(self.manifest.tools)} tools packaged, "
            f"{len(self.manifest.missing_tools)} tools missing"
        )
        if self.archive_path is not None:
            text += f", archive {self.archive_path.name}"
        return text


def _select_artifacts(scan_result: ScanResult, names: Optional[Sequence[str]]) -> List[Artifact]:
    if names is None:
        return list(scan_result.artifacts)
    selected: List[Artifact] = []
    unknown: List[str] = []
    seen = set()
    for name in names:
        artifact = scan_result.artifact(name)
        if artifact is None:
            unknown.append(name)
        elif artifact.name.casefold() not in seen:
            seen.add(artifact.name.casefold())
            selected.append(artifact)
    if unknown:
        raise NotFoundError(
            f"Unknown artifact(s): {', '.join(sorted(unknown, key=str.casefold))}",
            artifacts=unknown,
        )
    return selected


def _check_collisions(artifacts: Sequence[Artifact]) -> None:
    """Refuse to assemble when two artifacts share an output path ignoring case."""

    targets: Dict[str, str] = {}
    for artifact in artifacts:
        target = f"{ARTIFACTS_DIR}/{artifact.relative_path}"
        key = target.casefold()
        if key in targets:
            raise AssemblyCollisionError(
                f"Artifacts {targets[key]!r} and {artifact.name!r} both map to {target}",
                target=target,
                sources=[targets[key], artifact.name],
            )
        targets[key] = artifact.name


def _reset_output(output_dir: Path) -> None:
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        (output_dir / MANIFEST_NAME).unlink(missing_ok=True)
        for name in (ARTIFACTS_DIR, TOOLS_DIR):
            target = output_dir / name
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()
    except OSError as exc:
        raise StorageError(
            f"Failed to prepare output directory {output_dir}: {exc}", path=str(output_dir)
        ) from exc


def _missing_reason(tool: Tool) -> RecordedError:
    if tool.error is not None:
        detail = f"{tool.error.kind.value}: {tool.error.message}"
    else:
        detail = f"status {tool.download_status.value}"
    return RecordedError(
        ErrorKind.NOT_FOUND,
        tool.name,
        f"Tool {tool.name} not packaged ({detail})",
        {"status": tool.download_status.value},
    )


def write_archive(source_dir: Path, archive_path: Path) -> Path:
    """Zip ``source_dir`` deterministically: sorted entries, fixed timestamps and modes."""

    archive_path.parent.mkdir(parents=True, exist_ok=True)
    files = sorted(
        (path for path in source_dir.rglob("*") if path.is_file()),
        key=lambda path: path.relative_to(source_dir).as_posix(),
    )
    fd, temp_name = tempfile.mkstemp(dir=archive_path.parent, prefix=".", suffix=".zip.part")
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        with zipfile.ZipFile(temp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for path in files:
                if path.resolve() == archive_path.resolve():
                    continue
                info = zipfile.ZipInfo(path.relative_to(source_dir).as_posix(), date_time=_ZIP_EPOCH)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                with path.open("rb") as source, archive.open(info, "w") as target:
                    shutil.copyfileobj(source, target)
        os.replace(temp_path, archive_path)
    finally:
        temp_path.unlink(missing_ok=True)
    return archive_path


def assemble_package(
    scan_result: ScanResult,
    cache_dir: Optional[Path],
    output_dir: Path,
    options: Optional[PackageOptions] = None,
    *,
    config: Optional[ResolvedConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> AssemblyResult:
    """Assemble a deployable package from scanned artifacts and cached tools.

    Tools that are not available (status other than Verified or Skipped, or
    whose cached file has disappeared) are listed in ``missingTools`` instead
    of failing the run. So is a tool whose folder name, ignoring case, matches
    one already packaged; the earlier tool in name order keeps the folder.

    Raises:
        NotFoundError: If ``options.artifact_names`` names an unknown artifact.
        AssemblyCollisionError: If two artifacts map to the same output path.
        StorageError: If the output directory cannot be prepared, an artifact
            cannot be copied, or the manifest cannot be written.
    """

    opts = options or PackageOptions()
    active_config = config or get_default_config()
    log = logger or logging.getLogger("CollectorKit.ToolManager")
    out = Path(output_dir).expanduser()
    cache_root = Path(cache_dir or active_config.defaults.cache_dir).expanduser()

    artifacts = _select_artifacts(scan_result, opts.artifact_names)
    tools = scan_result.tool_database.needed_by(artifact.name for artifact in artifacts)
    _check_collisions(artifacts)

    _reset_output(out)
    for artifact in artifacts:
        copy_file(artifact.source_path, out / ARTIFACTS_DIR / artifact.relative_path)

    errors: List[RecordedError] = []
    packaged: List[ManifestTool] = []
    missing: List[str] = []
    # Tool folders already written, keyed case-insensitively.
    claimed: Dict[str, str] = {}
    for tool in tools:
        source = tool.local_path
        if not tool.download_status.is_available or source is None or not Path(source).is_file():
            missing.append(tool.name)
            errors.append(_missing_reason(tool))
            continue
        source = Path(source)
        if cache_root not in source.parents:
            log.debug(
                "packaging tool from outside the cache",
                extra={"stage": "package", "tool": tool.name, "path": str(source)},
            )
        folder = f"{TOOLS_DIR}/{sanitize_filename(tool.name)}"
        owner = claimed.get(folder.casefold())
        if owner is not None:
            missing.append(tool.name)
            errors.append(
                RecordedError(
                    ErrorKind.ASSEMBLY_COLLISION,
                    tool.name,
                    f"Tools {owner!r} and {tool.name!r} both map to {folder}",
                    {"target": folder, "sources": [owner, tool.name]},
                )
            )
            log.warning(
                "tool folder collision",
                extra={"stage": "package", "tool": tool.name, "target": folder, "owner": owner},
            )
            continue
        relative = f"{folder}/{source.name}"
        try:
            copy_file(source, out / relative)
            digest = tool.actual_hash or file_digest(source, "sha256")
        except (ToolManagerError, OSError) as exc:
            missing.append(tool.name)
            errors.append(RecordedError.from_exception(tool.name, exc))
            log.warning(
                "tool copy failed",
                extra={"stage": "package", "tool": tool.name, "error": str(exc)},
            )
            continue
        claimed[folder.casefold()] = tool.name
        packaged.append(ManifestTool(name=tool.name, version=tool.version, hash=digest, path=relative))

    manifest = PackageManifest(
        artifacts=tuple(artifact.name for artifact in artifacts),
        tools=tuple(packaged),
        missing_tools=tuple(sorted(missing, key=str.casefold)),
        created_at=utc_timestamp(),
    )
    manifest_path = out / MANIFEST_NAME
    try:
        write_json_atomic(manifest_path, manifest.to_dict())
    except OSError as exc:
        raise StorageError(f"Failed to write {manifest_path}: {exc}", path=str(manifest_path)) from exc

    result = AssemblyResult(output_dir=out, manifest=manifest, manifest_path=manifest_path, errors=errors)
    compress = opts.compress if opts.compress is not None else active_config.defaults.package.compress
    if compress:
        target = opts.archive_path or out.with_name(out.name + ".zip")
        try:
            result.archive_path = write_archive(out, Path(target).expanduser())
        except (OSError, zipfile.BadZipFile) as exc:
            errors.append(RecordedError.from_exception(str(target), exc))
            log.error(
                "package compression failed",
                extra={"stage": "package", "archive": str(target), "error": str(exc)},
            )

    log.info(
        result.summary(),
        extra={
            "stage": "package",
            "output_dir": str(out),
            "artifacts": len(manifest.artifacts),
            "tools": len(manifest.tools),
            "missing_tools": list(manifest.missing_tools),
        },
    )
    return result


def load_manifest(path: Path) -> PackageManifest:
    """Read and validate a ``manifest.json`` (a package directory is also accepted)."""

    manifest_path = Path(path)
    if manifest_path.is_dir():
        manifest_path = manifest_path / MANIFEST_NAME
    try:
        text = manifest_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise NotFoundError(f"Manifest not found: {manifest_path}", path=str(manifest_path)) from exc
    try:
        payload = json.loads(text)
        jsonschema.validate(instance=payload, schema=MANIFEST_SCHEMA)
    except ValueError as exc:
        raise ParseError(f"{manifest_path}: invalid JSON: {exc}", path=str(manifest_path)) from exc
    except jsonschema.ValidationError as exc:
        raise ParseError(
            f"{manifest_path}: manifest does not match schema: {exc.message}",
            path=str(manifest_path),
        ) from exc
    return PackageManifest.from_dict(payload)


def verify_package(output_dir: Path) -> List[str]:
    """Re-hash every packaged tool; return human-readable problems (empty when intact)."""

    root = Path(output_dir)
    manifest = load_manifest(root)
    problems: List[str] = []
    for entry in manifest.tools:
        path = root / entry.path
        if not path.is_file():
            problems.append(f"{entry.name}: missing file {entry.path}")
            continue
        if entry.hash and file_digest(path, "sha256") != entry.hash:
            problems.append(f"{entry.name}: hash mismatch for {entry.path}")
    return problems
