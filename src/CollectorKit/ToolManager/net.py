"""Shared HTTPX client factory.

Provides a lazily-built, thread-safe ``httpx.Client`` configured from
:class:`~CollectorKit.ToolManager.settings.DownloadConfiguration`.  Download
workers share the client so the connection pool is bounded by the same
``concurrent_downloads`` setting that bounds the worker pool.

Tests swap the transport with :func:`configure_http_client` (see
:mod:`CollectorKit.ToolManager.testing`).

Example:
    >>> from CollectorKit.ToolManager.net import get_http_client, close_http_client
    >>> client = get_http_client()
    >>> close_http_client()  # at process shutdown or test cleanup
"""

from __future__ import annotations

import logging
import os
import ssl
import threading
from typing import Optional

import certifi
import httpx

from .settings import DownloadConfiguration, get_default_config

__all__ = [
    "build_http_client",
    "close_http_client",
    "configure_http_client",
    "get_http_client",
    "reset_http_client",
]

logger = logging.getLogger(__name__)

_client: Optional[httpx.Client] = None
_client_pid: Optional[int] = None
_client_lock = threading.Lock()


def _create_ssl_context() -> ssl.SSLContext:
    """System defaults plus the certifi bundle; verification always on."""

    ctx = ssl.create_default_context(cafile=certifi.where())
    ctx.check_hostname = True
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


def build_http_client(
    http_config: DownloadConfiguration,
    *,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    """Create an HTTPX client honouring ``http_config`` timeouts and pool limits."""

    timeout = httpx.Timeout(http_config.timeout_sec, connect=http_config.connect_timeout_sec)
    limits = httpx.Limits(
        max_connections=max(http_config.concurrent_downloads * 2, 4),
        max_keepalive_connections=http_config.concurrent_downloads,
    )
    kwargs = {
        "timeout": timeout,
        "limits": limits,
        "follow_redirects": http_config.follow_redirects,
        "headers": http_config.request_headers(),
    }
    if transport is not None:
        return httpx.Client(transport=transport, **kwargs)
    return httpx.Client(verify=_create_ssl_context(), **kwargs)


def get_http_client(http_config: Optional[DownloadConfiguration] = None) -> httpx.Client:
    """Get or create the shared HTTPX client.

    The client is bound to the configuration seen on first use.  A forked child
    process rebuilds it on first call to avoid sharing sockets with its parent.
    """

    global _client, _client_pid

    with _client_lock:
        if _client is not None and _client_pid == os.getpid():
            return _client
        if _client is not None:
            logger.debug("Process forked; rebuilding HTTP client.")
            _client = None
        config = http_config or get_default_config().defaults.http
        _client = build_http_client(config)
        _client_pid = os.getpid()
        logger.debug(
            "HTTP client initialized",
            extra={"stage": "network", "pid": _client_pid, "timeout_sec": config.timeout_sec},
        )
        return _client


def configure_http_client(client: httpx.Client) -> None:
    """Install ``client`` as the shared client (used by tests and embedders)."""

    global _client, _client_pid

    with _client_lock:
        _client = client
        _client_pid = os.getpid()


def close_http_client() -> None:
    """Close the shared client. Safe to call when none has been created."""

    global _client

    with _client_lock:
        if _client is not None:
            try:
                _client.close()
            finally:
                _client = None


def reset_http_client() -> None:
    """Close and forget the shared client so the next call rebuilds it."""

    global _client_pid

    close_http_client()
    _client_pid = None
