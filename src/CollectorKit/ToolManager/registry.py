"""Deduplicate tool references from a scan into canonical :class:`Tool` records.

The registry is keyed case-insensitively; the display name is whatever the
first artifact used.  Later references may fill in blanks (URL, version,
expected hash, release project) but never overwrite a value already set:
disagreements become :class:`ConflictRecord` entries on the registry.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from .models import Artifact, ConflictRecord, Tool, ToolReference

__all__ = ["ToolRegistry", "build_registry"]

_MERGED_FIELDS = (
    ("url", "canonical_url"),
    ("version", "version"),
    ("expected_hash", "expected_hash"),
)


class ToolRegistry(Mapping[str, Tool]):
    """Case-insensitive, name-sorted mapping of tool name to :class:`Tool`."""

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}
        self.conflicts: List[ConflictRecord] = []

    def __getitem__(self, name: str) -> Tool:
        return self._tools[name.casefold()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.casefold() in self._tools

    def __iter__(self) -> Iterator[str]:
        for key in sorted(self._tools):
            yield self._tools[key].name

    def __len__(self) -> int:
        return len(self._tools)

    def sorted_tools(self) -> List[Tool]:
        return [self._tools[key] for key in sorted(self._tools)]

    def needed_by(self, artifact_names: Iterable[str]) -> List[Tool]:
        """Tools used by at least one of ``artifact_names``, sorted by name."""

        wanted = {name.casefold() for name in artifact_names}
        return [
            tool
            for tool in self.sorted_tools()
            if any(owner.casefold() in wanted for owner in tool.used_by_artifacts)
        ]

    def upsert(self, reference: ToolReference, artifact_name: str) -> Tool:
        """Merge ``reference`` declared by ``artifact_name`` into the registry."""

        key = reference.name.casefold()
        tool = self._tools.get(key)
        if tool is None:
            tool = Tool(
                name=reference.name,
                canonical_url=reference.url or "",
                version=reference.version,
                expected_hash=reference.expected_hash,
                github_project=reference.github_project,
                github_asset_regex=reference.github_asset_regex,
            )
            self._tools[key] = tool
        else:
            for ref_field, tool_field in _MERGED_FIELDS:
                self._merge_field(
                    tool,
                    tool_field,
                    ref_field,
                    getattr(reference, ref_field),
                    artifact_name,
                )
            if not tool.github_project and reference.github_project:
                tool.github_project = reference.github_project
                tool.github_asset_regex = reference.github_asset_regex
        tool.used_by_artifacts.add(artifact_name)
        return tool

    def _merge_field(
        self,
        tool: Tool,
        tool_field: str,
        label: str,
        incoming: Optional[str],
        artifact_name: str,
    ) -> None:
        if not incoming:
            return
        current = getattr(tool, tool_field)
        if not current:
            setattr(tool, tool_field, incoming)
            return
        if _same_value(label, current, incoming):
            return
        conflict = ConflictRecord(
            tool_name=tool.name,
            field=label,
            kept=current,
            rejected=incoming,
            artifact=artifact_name,
        )
        self.conflicts.append(conflict)
        logging.getLogger("CollectorKit.ToolManager").warning(
            "tool declaration conflict",
            extra={
                "stage": "registry",
                "tool": tool.name,
                "field": label,
                "kept": current,
                "rejected": incoming,
                "artifact": artifact_name,
            },
        )


def _same_value(label: str, left: str, right: str) -> bool:
    if label == "expected_hash":
        return left.strip().lower() == right.strip().lower()
    return left.strip() == right.strip()


def build_registry(artifacts: Sequence[Artifact]) -> ToolRegistry:
    """Build the deduplicated tool registry for ``artifacts`` (order-deterministic)."""

    registry = ToolRegistry()
    for artifact in artifacts:
        for reference in artifact.tools:
            registry.upsert(reference, artifact.name)
    return registry
