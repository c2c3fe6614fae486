"""Testing utilities for exercising the tool manager without real network access.

Provides an HTTPX mock-client installer, a request recorder, and helpers that
write artifact definition files for scanner and assembler tests.
"""

from __future__ import annotations

import contextlib
import hashlib
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

import httpx
import yaml

from .net import configure_http_client, reset_http_client
from .settings import DefaultsConfig, DownloadConfiguration, ResolvedConfig

__all__ = [
    "RequestRecorder",
    "sha256_hex",
    "make_config",
    "use_mock_http_client",
    "write_artifact",
]


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@contextlib.contextmanager
def use_mock_http_client(
    transport: httpx.BaseTransport, **client_kwargs
) -> Iterator[httpx.Client]:
    """Temporarily install an HTTPX client backed by ``transport`` as the shared client."""

    client_kwargs.setdefault("follow_redirects", True)
    client = httpx.Client(transport=transport, **client_kwargs)
    configure_http_client(client)
    try:
        yield client
    finally:
        reset_http_client()


@dataclass
class RequestRecorder:
    """Thread-safe ``MockTransport`` handler serving canned bodies by URL.

    ``routes`` maps a full URL to bytes, a status code, a callable, or a list of
    those consumed in order (the last one repeats).  Unknown
    URLs get a 404.  Requests are recorded along with the peak number in
    flight.
    """

    routes: Dict[str, object] = field(default_factory=dict)
    requests: List[httpx.Request] = field(default_factory=list)
    max_in_flight: int = 0
    delay: Optional[Callable[[httpx.Request], None]] = None
    _in_flight: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def count(self, url: str) -> int:
        with self._lock:
            return sum(1 for request in self.requests if str(request.url) == url)

    def _build(self, route: object, request: httpx.Request) -> httpx.Response:
        if callable(route):
            return route(request)
        if isinstance(route, int):
            return httpx.Response(route, text=f"status {route}")
        return httpx.Response(200, content=route)

    def _route(self, request: httpx.Request) -> httpx.Response:
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="not found")
        if isinstance(route, list):
            with self._lock:
                route = route.pop(0) if len(route) > 1 else route[0]
        return self._build(route, request)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.delay is not None:
                self.delay(request)
            return self._route(request)
        finally:
            with self._lock:
                self._in_flight -= 1

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def make_config(cache_dir: Path, **http_overrides) -> ResolvedConfig:
    """Configuration with zero backoff so retry tests never sleep."""

    http_overrides.setdefault("backoff_factor", 0.0)
    return ResolvedConfig(
        defaults=DefaultsConfig(
            cache_dir=cache_dir, http=DownloadConfiguration(**http_overrides)
        )
    )



def write_artifact(
    root: Path,
    relative_path: str,
    name: Optional[str] = None,
    tools: Optional[Sequence[Mapping[str, object]]] = None,
    *,
    extra: Optional[Mapping[str, object]] = None,
    raw: Optional[Union[str, bytes]] = None,
) -> Path:
    """Write an artifact definition under ``root`` and return its path.

    ``raw`` bypasses YAML serialisation for malformed-input tests.
    """

    path = root / relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    if raw is not None:
        if isinstance(raw, bytes):
            path.write_bytes(raw)
        else:
            path.write_text(raw, encoding="utf-8")
        return path
    document: Dict[str, object] = {"name": name or path.stem, "type": "CLIENT"}
    if tools is not None:
        document["tools"] = [dict(tool) for tool in tools]
    if extra:
        document.update(extra)
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
    return path
