"""Artifact definition scanner.

:func:`scan` walks a directory of artifact definitions, parses each YAML file,
and extracts the tool references it declares.  A malformed definition is
recorded as a :class:`~CollectorKit.ToolManager.errors.RecordedError` and the
scan carries on; only a missing scan root aborts the operation.

Tool extraction is structural.  Definitions from different vintages nest tool
declarations differently, so any sequence of mappings that looks like a tool
list counts:

* under a tool-like key (``tools``, ``tool``, ``*_tools``) every item with a
  ``name`` is a reference, URL or not;
* anywhere else an item needs a ``name`` plus a URL-like field (``url``,
  ``download_url``, ``github_release``, ``github_project``).

This is an approximation and can misfire on unusual documents.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import yaml

from . import yaml_tree
from .errors import ErrorKind, NotFoundError, ParseError, RecordedError
from .models import Artifact, ArtifactType, ToolReference
from .registry import ToolRegistry, build_registry
from .settings import ResolvedConfig, get_default_config

__all__ = [
    "ScanResult",
    "extract_tool_references",
    "iter_definition_files",
    "parse_artifact",
    "scan",
]

_TOOL_LIST_KEYS = frozenset({"tools", "tool"})
_NAME_KEYS = ("name",)
_URL_KEYS = ("url", "download_url")
_RELEASE_KEYS = ("github_release", "github_project")
_HASH_KEYS = ("expected_hash", "hash", "sha256")


@dataclass
class ScanResult:
    """Artifacts, tool registry, and recorded per-file errors from one scan."""

    root: Path
    artifacts: List[Artifact] = field(default_factory=list)
    tool_database: ToolRegistry = field(default_factory=ToolRegistry)
    errors: List[RecordedError] = field(default_factory=list)
    scan_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def conflicts(self):
        return self.tool_database.conflicts

    def artifact(self, name: str) -> Optional[Artifact]:
        key = name.casefold()
        for candidate in self.artifacts:
            if candidate.name.casefold() == key:
                return candidate
        return None

    def summary(self) -> str:
        parse_errors = sum(1 for error in self.errors if error.kind is ErrorKind.PARSE)
        return (
            f"{len(self.artifacts)} artifacts scanned, {parse_errors} failed to parse, "
            f"{len(self.tool_database)} tools registered, {len(self.conflicts)} conflicts"
        )


def _is_tool_list_key(key: str) -> bool:
    folded = key.casefold()
    return folded in _TOOL_LIST_KEYS or folded.endswith("_tools")


def _reference_from_mapping(
    item: Mapping[str, Any], *, require_source: bool
) -> Optional[ToolReference]:
    name = yaml_tree.get_str(item, *_NAME_KEYS)
    if not name:
        return None
    url = yaml_tree.get_str(item, *_URL_KEYS)
    project = yaml_tree.get_str(item, *_RELEASE_KEYS)
    if require_source and not (url or project):
        return None
    return ToolReference(
        name=name,
        url=url,
        version=yaml_tree.get_str(item, "version"),
        expected_hash=yaml_tree.get_str(item, *_HASH_KEYS),
        github_project=project,
        github_asset_regex=yaml_tree.get_str(item, "github_asset_regex", "asset_regex"),
    )


def extract_tool_references(document: Any) -> List[ToolReference]:
    """Find tool references anywhere in ``document`` (see module docstring)."""

    references: List[ToolReference] = []
    seen = set()
    for _path, key, value in yaml_tree.walk(document):
        if not yaml_tree.is_sequence(value):
            continue
        tool_key = _is_tool_list_key(key)
        for item in yaml_tree.iter_mappings(value):
            reference = _reference_from_mapping(item, require_source=not tool_key)
            if reference is None:
                continue
            identity = (reference.name.casefold(), reference.url or "")
            if identity in seen:
                continue
            seen.add(identity)
            references.append(reference)
    return references


def parse_artifact(path: Path, root: Path) -> Artifact:
    """Parse one definition file; raise :class:`ParseError` when it is unusable."""

    try:
        relative = path.relative_to(root).as_posix()
    except ValueError:
        relative = path.name
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(f"{relative}: not valid UTF-8 text", path=str(path)) from exc
    except OSError as exc:
        raise ParseError(f"{relative}: unreadable ({exc.strerror or exc})", path=str(path)) from exc
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 1 if mark is not None else None
        raise ParseError(f"{relative}: invalid YAML: {exc}", path=str(path), line=line) from exc
    if document is None:
        raise ParseError(f"{relative}: empty definition", path=str(path))
    if not yaml_tree.is_mapping(document):
        raise ParseError(
            f"{relative}: top level must be a mapping, got {type(document).__name__}",
            path=str(path),
        )

    return Artifact(
        name=yaml_tree.get_str(document, "name") or path.stem,
        source_path=path,
        relative_path=relative,
        type=ArtifactType.from_declared(yaml_tree.get_str(document, "type")),
        author=yaml_tree.get_str(document, "author"),
        description=yaml_tree.get_str(document, "description"),
        tools=tuple(extract_tool_references(document)),
    )


def _matches(relative: str, patterns: Sequence[str]) -> bool:
    name = relative.rsplit("/", 1)[-1]
    return any(
        fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(relative, pattern)
        for pattern in patterns
    )


def iter_definition_files(
    root: Path,
    include_patterns: Sequence[str],
    *,
    extensions: Sequence[str],
    follow_symlinks: bool = False,
) -> Iterator[Path]:
    """Yield definition files under ``root`` in sorted enumeration order."""

    suffixes = {suffix.lower() for suffix in extensions}
    for dirpath, dirnames, filenames in os.walk(root, followlinks=follow_symlinks):
        dirnames.sort()
        current = Path(dirpath)
        for filename in sorted(filenames):
            path = current / filename
            if path.suffix.lower() not in suffixes:
                continue
            if _matches(path.relative_to(root).as_posix(), include_patterns):
                yield path


def scan(
    artifact_path: Path,
    include_patterns: Optional[Sequence[str]] = None,
    *,
    config: Optional[ResolvedConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> ScanResult:
    """Scan ``artifact_path`` (directory or single file) for artifact definitions.

    Args:
        artifact_path: Scan root directory, or one definition file.
        include_patterns: fnmatch globs; ``None`` uses the configured default (``*``).
        config: Optional configuration; defaults to :func:`get_default_config`.
        logger: Logger for structured scan telemetry.

    Returns:
        ScanResult with parsed artifacts, the tool registry, and recorded errors.

    Raises:
        NotFoundError: If ``artifact_path`` does not exist.
    """

    active_config = config or get_default_config()
    scan_config = active_config.defaults.scan
    log = logger or logging.getLogger("CollectorKit.ToolManager")
    patterns = list(include_patterns) if include_patterns else list(scan_config.include_patterns)

    path = Path(artifact_path).expanduser()
    if not path.exists():
        raise NotFoundError(f"Artifact path does not exist: {path}", path=str(path))

    if path.is_file():
        root = path.parent
        candidates: List[Path] = [path]
    else:
        root = path
        candidates = list(
            iter_definition_files(
                root,
                patterns,
                extensions=scan_config.extensions,
                follow_symlinks=scan_config.follow_symlinks,
            )
        )

    result = ScanResult(root=root)
    names: Dict[str, Path] = {}
    for candidate in candidates:
        try:
            artifact = parse_artifact(candidate, root)
        except ParseError as exc:
            result.errors.append(RecordedError.from_exception(str(candidate), exc))
            log.warning(
                "artifact definition skipped",
                extra={"stage": "scan", "path": str(candidate), "error": str(exc)},
            )
            continue
        key = artifact.name.casefold()
        if key in names:
            duplicate = ParseError(
                f"{artifact.relative_path}: duplicate artifact name {artifact.name!r} "
                f"(first defined in {names[key]})",
                path=str(candidate),
            )
            result.errors.append(RecordedError.from_exception(str(candidate), duplicate))
            log.warning(
                "duplicate artifact name",
                extra={"stage": "scan", "path": str(candidate), "artifact": artifact.name},
            )
            continue
        names[key] = candidate
        result.artifacts.append(artifact)

    result.tool_database = build_registry(result.artifacts)
    log.info(
        result.summary(),
        extra={
            "stage": "scan",
            "root": str(root),
            "artifacts": len(result.artifacts),
            "errors": len(result.errors),
            "tools": len(result.tool_database),
        },
    )
    return result
