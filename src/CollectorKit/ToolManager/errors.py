"""Exception hierarchy shared across artifact scanning, tool download, and packaging.

The tool manager spans YAML parsing, HTTP retrieval, cache bookkeeping, and
package assembly.  Every failure mode carries an :class:`ErrorKind` so caller
code can branch on the category instead of inspecting message text, and batch
operations record recoverable failures as :class:`RecordedError` entries rather
than aborting the whole run.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence

__all__ = [
    "ErrorKind",
    "RecordedError",
    "ToolManagerError",
    "NotFoundError",
    "ParseError",
    "NetworkError",
    "HashMismatchError",
    "ConflictError",
    "AssemblyCollisionError",
    "StorageError",
    "UnresolvedToolError",
    "ConfigError",
    "InvalidTransitionError",
]


class ErrorKind(str, enum.Enum):
    """Closed set of failure categories surfaced by the tool manager."""

    NOT_FOUND = "not_found"
    PARSE = "parse"
    NETWORK = "network"
    HASH_MISMATCH = "hash_mismatch"
    CONFLICT = "conflict"
    ASSEMBLY_COLLISION = "assembly_collision"
    IO = "io"
    UNRESOLVED = "unresolved"
    CONFIG = "config"


class ToolManagerError(RuntimeError):
    """Base exception for scan, download, or packaging failures."""

    kind: ErrorKind = ErrorKind.IO

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = {
            key: value for key, value in context.items() if value is not None
        }


class NotFoundError(ToolManagerError):
    """Raised when a scan root, artifact, or manifest does not exist."""

    kind = ErrorKind.NOT_FOUND


class ParseError(ToolManagerError):
    """Raised when an artifact definition cannot be parsed."""

    kind = ErrorKind.PARSE

    def __init__(self, message: str, *, path: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, path=path, **context)
        self.path = path


class NetworkError(ToolManagerError):
    """Raised when an HTTP request fails.

    ``retryable`` separates transient failures (timeouts, resets, 5xx) from
    permanent ones (4xx) so the retry policy can stop early.
    """

    kind = ErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, url=url, status_code=status_code, retryable=retryable)
        self.url = url
        self.status_code = status_code
        self.retryable = retryable


class HashMismatchError(ToolManagerError):
    """Raised when downloaded bytes do not match the declared digest."""

    kind = ErrorKind.HASH_MISMATCH

    def __init__(
        self,
        message: str,
        *,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        algorithm: Optional[str] = None,
    ) -> None:
        super().__init__(message, expected=expected, actual=actual, algorithm=algorithm)
        self.expected = expected
        self.actual = actual
        self.algorithm = algorithm


class ConflictError(ToolManagerError):
    """Informational: two artifacts declare the same tool with different values.

    The registry records conflicts instead of raising this; it exists so the
    category can be rendered with the rest of the taxonomy.
    """

    kind = ErrorKind.CONFLICT


class AssemblyCollisionError(ToolManagerError):
    """Raised when two artifacts would be written to the same package path."""

    kind = ErrorKind.ASSEMBLY_COLLISION

    def __init__(self, message: str, *, target: str, sources: Sequence[str]) -> None:
        super().__init__(message, target=target, sources=list(sources))
        self.target = target
        self.sources = tuple(sources)


class StorageError(ToolManagerError):
    """Raised when the local filesystem rejects a read, write, or rename."""

    kind = ErrorKind.IO


class UnresolvedToolError(ToolManagerError):
    """Raised when a tool reference has neither a URL nor a release source."""

    kind = ErrorKind.UNRESOLVED


class ConfigError(ToolManagerError):
    """Raised when CLI arguments or YAML configuration inputs are invalid."""

    kind = ErrorKind.CONFIG


class InvalidTransitionError(ToolManagerError):
    """Raised when a tool's download status would move backwards."""

    kind = ErrorKind.CONFIG


@dataclass(frozen=True)
class RecordedError:
    """A recoverable failure accumulated by a batch operation."""

    kind: ErrorKind
    subject: str
    message: str
    context: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, subject: str, exc: BaseException) -> "RecordedError":
        """Capture ``exc`` against ``subject`` (a file path or tool name)."""

        if isinstance(exc, ToolManagerError):
            return cls(exc.kind, subject, str(exc), dict(exc.context))
        if isinstance(exc, OSError):
            return cls(ErrorKind.IO, subject, str(exc), {"errno": exc.errno})
        return cls(ErrorKind.IO, subject, f"{type(exc).__name__}: {exc}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "subject": self.subject,
            "message": self.message,
            "context": dict(self.context),
        }
# === NAVMAP v1 ===
# {
#   "module": "CollectorKit.ToolManager.errors",
#   "purpose": "Define the error taxonomy used across scanning, downloading, and packaging",
#   "sections": [
#     {"id": "kinds", "name": "ErrorKind", "anchor": "KND", "kind": "api"},
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "network", "name": "Network & Integrity Errors", "anchor": "NET", "kind": "api"},
#     {"id": "assembly", "name": "Assembly Errors", "anchor": "ASM", "kind": "api"},
#     {"id": "recorded", "name": "RecordedError", "anchor": "REC", "kind": "api"}
#   ]
# }
# === /NAVMAP ===
