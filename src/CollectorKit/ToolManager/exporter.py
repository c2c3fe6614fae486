"""Artifact-to-tool mapping exports.

Every renderer here is derived from the same row sequence produced by
:func:`mapping_rows`, so CSV, TSV, and JSON exports of one scan always agree.
Exports read tool status from the registry as a snapshot; during a concurrent
download the status column is advisory.
"""

from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .scanner import ScanResult

__all__ = [
    "EXPORT_FORMATS",
    "MappingRow",
    "NONE_TOOL",
    "export_mapping",
    "export_tool_inventory",
    "mapping_rows",
]

EXPORT_FORMATS = ("csv", "tsv", "json")
MAPPING_HEADERS = ("ArtifactName", "ToolName")
# Tool column of the synthetic row emitted for artifacts with no tools.
NONE_TOOL = "None"
INVENTORY_HEADERS = ("ToolName", "Version", "Url", "Status", "UsedBy")


@dataclass(frozen=True)
class MappingRow:
    artifact_name: str
    tool_name: str
    download_status: Optional[str] = None


def _sort_key(row: MappingRow):
    return (row.artifact_name.casefold(), row.tool_name.casefold())


def mapping_rows(scan_result: ScanResult) -> List[MappingRow]:
    """One row per (artifact, tool reference); tool-less artifacts get a ``"None"`` row."""

    registry = scan_result.tool_database
    rows: List[MappingRow] = []
    for artifact in scan_result.artifacts:
        if not artifact.tools:
            rows.append(MappingRow(artifact.name, NONE_TOOL))
            continue
        for reference in artifact.tools:
            status = None
            if reference.name in registry:
                status = registry[reference.name].download_status.value
            rows.append(MappingRow(artifact.name, reference.name, status))
    rows.sort(key=_sort_key)
    return rows


def _normalize_format(format: str) -> str:
    normalized = (format or "").strip().lower()
    if normalized not in EXPORT_FORMATS:
        raise ValueError(
            f"Unsupported export format {format!r}; expected one of {', '.join(EXPORT_FORMATS)}"
        )
    return normalized


def _delimited(headers: Sequence[str], rows: Sequence[Sequence[str]], delimiter: str) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def _json(payload: Dict[str, Any]) -> bytes:
    return (json.dumps(payload, indent=2) + "\n").encode("utf-8")


def export_mapping(scan_result: ScanResult, format: str = "csv") -> bytes:
    """Serialize the artifact-to-tool mapping.

    Args:
        scan_result: Result of :func:`~CollectorKit.ToolManager.scanner.scan`.
        format: ``csv``, ``tsv``, or ``json``.

    Returns:
        UTF-8 encoded export.  Artifacts that reference no tools appear once with
        ``ToolName`` set to ``"None"``.

    Raises:
        ValueError: If ``format`` is not supported.
    """

    kind = _normalize_format(format)
    rows = mapping_rows(scan_result)
    if kind == "json":
        return _json(
            {
                "totalArtifacts": len(scan_result.artifacts),
                "totalTools": len(scan_result.tool_database),
                "rows": [
                    {
                        "artifactName": row.artifact_name,
                        "toolName": row.tool_name,
                        "downloadStatus": row.download_status,
                    }
                    for row in rows
                ],
            }
        )
    delimiter = "\t" if kind == "tsv" else ","
    return _delimited(
        MAPPING_HEADERS,
        [(row.artifact_name, row.tool_name) for row in rows],
        delimiter,
    )


def export_tool_inventory(scan_result: ScanResult, format: str = "csv") -> bytes:
    """Serialize one row per registry tool with its source, status, and users."""

    kind = _normalize_format(format)
    tools = scan_result.tool_database.sorted_tools()
    if kind == "json":
        return _json({"totalTools": len(tools), "tools": [tool.to_dict() for tool in tools]})
    delimiter = "\t" if kind == "tsv" else ","
    return _delimited(
        INVENTORY_HEADERS,
        [
            (
                tool.name,
                tool.version or "",
                tool.canonical_url or tool.github_project or "",
                tool.download_status.value,
                ";".join(sorted(tool.used_by_artifacts, key=str.casefold)),
            )
            for tool in tools
        ],
        delimiter,
    )
