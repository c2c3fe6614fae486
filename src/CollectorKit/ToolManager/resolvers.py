"""Resolve release-based tool references to a concrete download URL.

Some artifact definitions name a GitHub project (``github_project`` or
``github_release``) instead of a fixed URL, optionally with a regular
expression selecting one release asset.  :func:`resolve_github_release` asks
the GitHub releases API for the matching release and returns the asset's
browser download URL.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .errors import NetworkError, UnresolvedToolError
from .models import Tool
from .retry import network_error_from_httpx
from .settings import DownloadConfiguration

__all__ = ["ResolvedAsset", "parse_project", "resolve_github_release", "select_asset"]

_PROJECT_PATTERN = re.compile(r"^(?:https?://github\.com/)?([\w.-]+)/([\w.-]+?)(?:\.git)?/?$")


@dataclass(frozen=True)
class ResolvedAsset:
    url: str
    asset_name: str
    tag: Optional[str]


def parse_project(project: str) -> str:
    """Normalise ``owner/repo`` or a github.com URL to ``owner/repo``."""

    match = _PROJECT_PATTERN.match(project.strip())
    if not match:
        raise UnresolvedToolError(f"Not a GitHub project reference: {project!r}", project=project)
    return f"{match.group(1)}/{match.group(2)}"


def select_asset(
    assets: List[Dict[str, Any]], pattern: Optional[str]
) -> Optional[Dict[str, Any]]:
    """Pick the first asset whose name matches ``pattern`` (or the only asset)."""

    if pattern:
        try:
            compiled = re.compile(pattern)
        except re.error as exc:
            raise UnresolvedToolError(f"Invalid asset pattern {pattern!r}: {exc}") from exc
        for asset in assets:
            if compiled.search(str(asset.get("name", ""))):
                return asset
        return None
    if len(assets) == 1:
        return assets[0]
    return None


def resolve_github_release(
    tool: Tool,
    *,
    client: httpx.Client,
    http_config: DownloadConfiguration,
    logger: Optional[logging.Logger] = None,
) -> ResolvedAsset:
    """Look up the release asset for ``tool``.

    ``tool.version`` selects a release tag when set; otherwise the latest
    release is used.

    Raises:
        UnresolvedToolError: If the project is malformed or no asset matches.
        NetworkError: If the API request fails.
    """

    log = logger or logging.getLogger("CollectorKit.ToolManager")
    if not tool.github_project:
        raise UnresolvedToolError(f"Tool {tool.name} has no release project", tool=tool.name)
    project = parse_project(tool.github_project)
    base = http_config.github_api_url.rstrip("/")
    if tool.version:
        endpoint = f"{base}/repos/{project}/releases/tags/{tool.version}"
    else:
        endpoint = f"{base}/repos/{project}/releases/latest"

    try:
        response = client.get(endpoint, headers=http_config.github_headers())
        response.raise_for_status()
        payload = response.json()
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise network_error_from_httpx(exc, endpoint) from exc
    except ValueError as exc:
        raise NetworkError(f"Release API returned invalid JSON: {endpoint}", url=endpoint) from exc

    assets = payload.get("assets") if isinstance(payload, dict) else None
    if not isinstance(assets, list):
        raise UnresolvedToolError(f"Release for {project} lists no assets", project=project)
    candidates = [item for item in assets if isinstance(item, dict)]
    asset = select_asset(candidates, tool.github_asset_regex)
    if asset is None or not asset.get("browser_download_url"):
        raise UnresolvedToolError(
            f"No release asset of {project} matches {tool.github_asset_regex!r}",
            project=project,
            tool=tool.name,
        )
    resolved = ResolvedAsset(
        url=str(asset["browser_download_url"]),
        asset_name=str(asset.get("name", "")),
        tag=payload.get("tag_name"),
    )
    log.info(
        "resolved release asset",
        extra={
            "stage": "resolve",
            "tool": tool.name,
            "project": project,
            "tag": resolved.tag,
            "asset": resolved.asset_name,
        },
    )
    return resolved
