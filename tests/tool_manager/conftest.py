"""Shared fixtures for the tool_manager test suite."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from CollectorKit.ToolManager.net import reset_http_client
from CollectorKit.ToolManager.settings import invalidate_default_config_cache
from CollectorKit.ToolManager.testing import RequestRecorder, make_config


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep configuration, logs, and the shared HTTP client out of the user's home."""

    for name in list(os.environ):
        if name.startswith("TOOLMGR_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TOOLMGR_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("TOOLMGR_CACHE_DIR", str(tmp_path / "default-cache"))
    invalidate_default_config_cache()
    yield
    reset_http_client()
    invalidate_default_config_cache()
    logger = logging.getLogger("CollectorKit.ToolManager")
    for handler in list(logger.handlers):
        if getattr(handler, "_toolmgr_managed", False):
            logger.removeHandler(handler)
            handler.close()
    logger.propagate = True


@pytest.fixture
def artifact_root(tmp_path: Path) -> Path:
    root = tmp_path / "artifacts"
    root.mkdir()
    return root


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def config(cache_dir: Path):
    return make_config(cache_dir)


@pytest.fixture
def recorder() -> RequestRecorder:
    return RequestRecorder()
