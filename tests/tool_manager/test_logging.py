"""Structured JSON logging, secret masking, and log retention."""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path

from CollectorKit.ToolManager.logging_utils import (
    JSONFormatter,
    mask_sensitive_data,
    setup_logging,
)


def test_mask_sensitive_data_masks_keys_and_tokens():
    payload = {
        "Authorization": "Bearer abc",
        "headers": {"token": "plain", "accept": "application/json"},
        "message": "using ghp_" + "a" * 36 + " for api",
        "urls": ["https://e/x?sig=1", "Bearer xyz"],
        "count": 3,
    }

    masked = mask_sensitive_data(payload)

    assert masked["Authorization"] == "***masked***"
    assert masked["headers"] == {"token": "***masked***", "accept": "application/json"}
    assert masked["message"] == "using ***masked*** for api"
    assert masked["urls"] == ["https://e/x?sig=1", "***masked***"]
    assert masked["count"] == 3
    assert payload["headers"]["token"] == "plain"


def test_json_formatter_includes_extras():
    record = logging.LogRecord(
        "CollectorKit.ToolManager", logging.WARNING, __file__, 1, "retrying %s", ("X",), None
    )
    record.stage = "download"
    record.tool = "X"
    record.github_token = "secret"

    payload = json.loads(JSONFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["message"] == "retrying X"
    assert payload["stage"] == "download"
    assert payload["tool"] == "X"
    assert payload["github_token"] == "***masked***"
    assert payload["timestamp"].endswith("Z")


def test_setup_logging_writes_jsonl_and_replaces_handlers(tmp_path: Path):
    log_dir = tmp_path / "logs"

    setup_logging(level="DEBUG", log_dir=log_dir, console=False)
    logger = setup_logging(level="DEBUG", log_dir=log_dir, console=True)
    logger.info("scan complete", extra={"stage": "scan", "artifacts": 2})
    for handler in logger.handlers:
        handler.flush()

    managed = [handler for handler in logger.handlers if getattr(handler, "_toolmgr_managed", False)]
    assert len(managed) == 2
    assert logger.propagate is False
    files = list(log_dir.glob("toolmgr-*.jsonl"))
    assert len(files) == 1
    lines = files[0].read_text(encoding="utf-8").splitlines()
    entry = json.loads(lines[-1])
    assert entry["message"] == "scan complete"
    assert entry["artifacts"] == 2


def test_old_logs_are_compressed_then_expired(tmp_path: Path):
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    old = log_dir / "toolmgr-20000101.jsonl"
    old.write_text("{}\n", encoding="utf-8")
    ancient = log_dir / "toolmgr-19990101.jsonl.gz"
    ancient.write_bytes(b"")
    month_ago = time.time() - 30 * 86400
    os.utime(old, (month_ago, month_ago))
    os.utime(ancient, (month_ago, month_ago))

    setup_logging(log_dir=log_dir, retention_days=7, console=False)

    assert not old.exists()
    assert (log_dir / "toolmgr-20000101.jsonl.gz").exists()
    assert not ancient.exists()
