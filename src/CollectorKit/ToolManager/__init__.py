# === NAVMAP v1 ===
# {
#   "module": "CollectorKit.ToolManager",
#   "purpose": "Package initialization for CollectorKit.ToolManager",
#   "sections": [
#     {"id": "getattr", "name": "__getattr__", "anchor": "function-getattr", "kind": "function"},
#     {"id": "dir", "name": "__dir__", "anchor": "function-dir", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Public API for the artifact tool manager.

Scan a directory of artifact definitions, build the deduplicated tool
registry, download every tool into a content-verified cache, and assemble
deployable packages with a manifest::

    from CollectorKit.ToolManager import assemble_package, download, scan

    result = scan(Path("artifacts"))
    report = download(result.tool_database, Path("cache"))
    assemble_package(result, Path("cache"), Path("out"))
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any, Dict

__version__ = "1.0.0"

_EXPORTS: Dict[str, str] = {
    "scan": "scanner",
    "ScanResult": "scanner",
    "build_registry": "registry",
    "ToolRegistry": "registry",
    "download": "downloader",
    "mark_cached": "downloader",
    "assemble_package": "package",
    "AssemblyResult": "package",
    "PackageOptions": "package",
    "load_manifest": "package",
    "verify_package": "package",
    "export_mapping": "exporter",
    "export_tool_inventory": "exporter",
    "mapping_rows": "exporter",
    "CancellationToken": "cancellation",
    "load_config": "settings",
    "ResolvedConfig": "settings",
    "Artifact": "models",
    "ArtifactType": "models",
    "DownloadReport": "models",
    "DownloadStatus": "models",
    "PackageManifest": "models",
    "Tool": "models",
    "ToolReference": "models",
    "ErrorKind": "errors",
    "RecordedError": "errors",
    "ToolManagerError": "errors",
}

__all__ = ["__version__", *_EXPORTS]

if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .cancellation import CancellationToken
    from .downloader import download, mark_cached
    from .errors import ErrorKind, RecordedError, ToolManagerError
    from .exporter import export_mapping, export_tool_inventory, mapping_rows
    from .models import (
        Artifact,
        ArtifactType,
        DownloadReport,
        DownloadStatus,
        PackageManifest,
        Tool,
        ToolReference,
    )
    from .package import AssemblyResult, PackageOptions, assemble_package, load_manifest, verify_package
    from .registry import ToolRegistry, build_registry
    from .scanner import ScanResult, scan
    from .settings import ResolvedConfig, load_config


def __getattr__(name: str) -> Any:
    """Lazily import API exports to keep package import cheap."""

    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
    value = getattr(import_module(f".{module_name}", __name__), name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    """Expose lazily-populated attributes in ``dir()`` results."""

    return sorted(set(globals()) | set(__all__))
