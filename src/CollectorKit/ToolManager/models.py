"""Data model shared by the scanner, registry, downloader, and assembler.

``Artifact`` and ``ToolReference`` are immutable records produced by a scan.
``Tool`` is the deduplicated registry entry; its download fields are the only
state mutated after a scan and they move forward only (see
:meth:`Tool.transition`).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .errors import ErrorKind, InvalidTransitionError, RecordedError

__all__ = [
    "Artifact",
    "ArtifactType",
    "ConflictRecord",
    "DownloadReport",
    "DownloadStatus",
    "ManifestTool",
    "PackageManifest",
    "Tool",
    "ToolOutcome",
    "ToolReference",
]


class ArtifactType(str, enum.Enum):
    CLIENT = "CLIENT"
    SERVER = "SERVER"
    OTHER = "OTHER"

    @classmethod
    def from_declared(cls, value: Optional[str]) -> "ArtifactType":
        """Map a definition's ``type`` field (``CLIENT_EVENT`` etc.) onto the enum."""

        if not value:
            return cls.OTHER
        upper = value.strip().upper()
        if upper.startswith("CLIENT"):
            return cls.CLIENT
        if upper.startswith("SERVER"):
            return cls.SERVER
        return cls.OTHER


class DownloadStatus(str, enum.Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    VERIFIED = "Verified"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def is_available(self) -> bool:
        """True when a verified file is on disk for the tool."""

        return self in (DownloadStatus.VERIFIED, DownloadStatus.SKIPPED)


_ALLOWED_TRANSITIONS: Dict[DownloadStatus, FrozenSet[DownloadStatus]] = {
    DownloadStatus.PENDING: frozenset({DownloadStatus.IN_PROGRESS, DownloadStatus.SKIPPED}),
    DownloadStatus.IN_PROGRESS: frozenset({DownloadStatus.VERIFIED, DownloadStatus.FAILED}),
    DownloadStatus.VERIFIED: frozenset(),
    DownloadStatus.FAILED: frozenset(),
    DownloadStatus.SKIPPED: frozenset(),
}


@dataclass(frozen=True)
class ToolReference:
    """A tool as declared inside one artifact definition."""

    name: str
    url: Optional[str] = None
    version: Optional[str] = None
    expected_hash: Optional[str] = None
    github_project: Optional[str] = None
    github_asset_regex: Optional[str] = None


@dataclass(frozen=True)
class Artifact:
    """One parsed artifact definition file."""

    name: str
    source_path: Path
    relative_path: str
    type: ArtifactType = ArtifactType.OTHER
    author: Optional[str] = None
    description: Optional[str] = None
    tools: Tuple[ToolReference, ...] = ()

    @property
    def tool_names(self) -> List[str]:
        return [reference.name for reference in self.tools]


@dataclass(frozen=True)
class ConflictRecord:
    """Two artifacts disagree about a tool attribute; the first value is kept."""

    tool_name: str
    field: str
    kept: str
    rejected: str
    artifact: str

    def to_recorded_error(self) -> RecordedError:
        return RecordedError(
            ErrorKind.CONFLICT,
            self.tool_name,
            f"{self.artifact} declares {self.field} {self.rejected!r}; keeping {self.kept!r}",
            {"field": self.field, "kept": self.kept, "rejected": self.rejected,
             "artifact": self.artifact},
        )


@dataclass
class Tool:
    """Canonical registry entry for a tool referenced by one or more artifacts."""

    name: str
    canonical_url: str = ""
    version: Optional[str] = None
    expected_hash: Optional[str] = None
    github_project: Optional[str] = None
    github_asset_regex: Optional[str] = None
    used_by_artifacts: set = field(default_factory=set)
    download_status: DownloadStatus = DownloadStatus.PENDING
    local_path: Optional[Path] = None
    actual_hash: Optional[str] = None
    error: Optional[RecordedError] = None

    def transition(self, status: DownloadStatus) -> None:
        """Move to ``status``; raise :class:`InvalidTransitionError` if it goes backwards."""

        if status not in _ALLOWED_TRANSITIONS[self.download_status]:
            raise InvalidTransitionError(
                f"Tool {self.name}: cannot move from {self.download_status.value} to {status.value}",
                tool=self.name,
            )
        self.download_status = status

    @property
    def has_source(self) -> bool:
        return bool(self.canonical_url or self.github_project)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "url": self.canonical_url,
            "version": self.version,
            "expectedHash": self.expected_hash,
            "githubProject": self.github_project,
            "usedBy": sorted(self.used_by_artifacts, key=str.casefold),
            "status": self.download_status.value,
            "localPath": str(self.local_path) if self.local_path else None,
            "hash": self.actual_hash,
        }


@dataclass
class ToolOutcome:
    """Per-tool result of one download run."""

    name: str
    status: DownloadStatus
    local_path: Optional[Path] = None
    actual_hash: Optional[str] = None
    attempts: int = 0
    bytes_downloaded: int = 0
    error: Optional[RecordedError] = None


@dataclass
class DownloadReport:
    """Outcome of :func:`download`; partial failure is the normal case."""

    outcomes: List[ToolOutcome] = field(default_factory=list)
    not_attempted: List[str] = field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def _names_with(self, status: DownloadStatus) -> List[str]:
        return sorted(
            (outcome.name for outcome in self.outcomes if outcome.status is status),
            key=str.casefold,
        )

    @property
    def verified(self) -> List[str]:
        return self._names_with(DownloadStatus.VERIFIED)

    @property
    def skipped(self) -> List[str]:
        return self._names_with(DownloadStatus.SKIPPED)

    @property
    def failed(self) -> List[str]:
        return self._names_with(DownloadStatus.FAILED)

    @property
    def errors(self) -> List[RecordedError]:
        return [outcome.error for outcome in self.outcomes if outcome.error is not None]

    def outcome(self, name: str) -> Optional[ToolOutcome]:
        key = name.casefold()
        for candidate in self.outcomes:
            if candidate.name.casefold() == key:
                return candidate
        return None

    def summary(self) -> str:
        total = len(self.outcomes) + len(self.not_attempted)
        parts = [
            f"{total} tools processed",
            f"{len(self.verified)} downloaded",
            f"{len(self.skipped)} cached",
            f"{len(self.failed)} failed",
        ]
        if self.not_attempted:
            parts.append(f"{len(self.not_attempted)} not attempted")
        return ", ".join(parts)


@dataclass(frozen=True)
class ManifestTool:
    name: str
    version: Optional[str]
    hash: Optional[str]
    path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "version": self.version, "hash": self.hash, "path": self.path}


@dataclass(frozen=True)
class PackageManifest:
    """Single source of truth for the contents of an assembled package."""

    artifacts: Tuple[str, ...]
    tools: Tuple[ManifestTool, ...]
    missing_tools: Tuple[str, ...]
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "artifacts": list(self.artifacts),
            "tools": [tool.to_dict() for tool in self.tools],
            "missingTools": list(self.missing_tools),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PackageManifest":
        return cls(
            artifacts=tuple(payload.get("artifacts", ())),
            tools=tuple(
                ManifestTool(
                    name=entry["name"],
                    version=entry.get("version"),
                    hash=entry.get("hash"),
                    path=entry["path"],
                )
                for entry in payload.get("tools", ())
            ),
            missing_tools=tuple(payload.get("missingTools", ())),
            created_at=payload["createdAt"],
        )
