"""End-to-end CLI behaviour through Typer's test runner."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from CollectorKit.ToolManager import __version__
from CollectorKit.ToolManager.cli import app
from CollectorKit.ToolManager.testing import RequestRecorder, use_mock_http_client, write_artifact

runner = CliRunner()

X_URL = "https://tools.example.org/x.exe"


@pytest.fixture
def definitions(artifact_root: Path) -> Path:
    write_artifact(artifact_root, "A.yaml", "A", [{"name": "X", "url": X_URL}])
    write_artifact(artifact_root, "B.yaml", "B", [{"name": "X", "url": X_URL}, {"name": "Y"}])
    return artifact_root


@pytest.fixture
def default_cache(tmp_path: Path) -> Path:
    # Matches TOOLMGR_CACHE_DIR set by the autouse environment fixture.
    return tmp_path / "default-cache"


def test_version():
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_scan_json(definitions: Path):
    result = runner.invoke(app, ["scan", str(definitions), "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert [artifact["name"] for artifact in payload["artifacts"]] == ["A", "B"]
    assert payload["artifacts"][1]["tools"] == ["X", "Y"]
    assert payload["tools"] == 2
    assert payload["errors"] == []


def test_scan_missing_path_fails(tmp_path: Path):
    result = runner.invoke(app, ["scan", str(tmp_path / "nowhere")])

    assert result.exit_code == 1
    assert "not_found" in result.output


def test_export_csv_to_stdout(definitions: Path):
    result = runner.invoke(app, ["export", str(definitions)])

    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == ["ArtifactName,ToolName", "A,X", "B,X", "B,Y"]


def test_export_json_to_file(definitions: Path, tmp_path: Path):
    target = tmp_path / "exports" / "mapping.json"

    result = runner.invoke(
        app, ["export", str(definitions), "--format", "json", "--output", str(target)]
    )

    assert result.exit_code == 0, result.output
    assert json.loads(target.read_text(encoding="utf-8"))["totalArtifacts"] == 2


def test_export_rejects_unknown_format(definitions: Path):
    result = runner.invoke(app, ["export", str(definitions), "-f", "xml"])

    assert result.exit_code == 2


def test_download_package_verify_round(definitions: Path, tmp_path: Path, default_cache: Path):
    recorder = RequestRecorder(routes={X_URL: b"x-binary"})
    out = tmp_path / "package"

    with use_mock_http_client(recorder.transport()):
        downloaded = runner.invoke(app, ["download", str(definitions), "--tool", "X"])
    assert downloaded.exit_code == 0, downloaded.output
    assert (default_cache / "X" / "latest" / "x.exe").read_bytes() == b"x-binary"

    packaged = runner.invoke(app, ["package", str(definitions), str(out), "--offline", "--zip"])
    assert packaged.exit_code == 0, packaged.output
    manifest = json.loads((out / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["missingTools"] == ["Y"]
    assert (tmp_path / "package.zip").is_file()
    assert recorder.count(X_URL) == 1

    verified = runner.invoke(app, ["verify", str(out)])
    assert verified.exit_code == 0, verified.output
    assert "Package intact" in verified.output

    (out / "tools" / "X" / "x.exe").write_bytes(b"changed")
    tampered = runner.invoke(app, ["verify", str(out)])
    assert tampered.exit_code == 1
    assert "hash mismatch" in tampered.output


def test_download_failure_exits_nonzero(definitions: Path):
    with use_mock_http_client(RequestRecorder().transport()):
        result = runner.invoke(app, ["download", str(definitions)])

    assert result.exit_code == 1
    assert "failed" in result.output


def test_tools_lists_cache_status(definitions: Path):
    result = runner.invoke(app, ["tools", str(definitions)])

    assert result.exit_code == 0, result.output
    assert "2 tools" in result.output
    assert "Pending" in result.output


def test_config_show_redacts_token(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TOOLMGR_GITHUB_TOKEN", "ghp_shouldnotappear")

    result = runner.invoke(app, ["config", "show", "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["http"]["github_token"] == "***redacted***"
    assert "ghp_shouldnotappear" not in result.output


def test_invalid_config_file_exits_with_usage_code(tmp_path: Path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("defaults:\n  http:\n    max_retries: -1\n", encoding="utf-8")

    result = runner.invoke(app, ["--config", str(bad), "config", "show"])

    assert result.exit_code == 2
    assert "max_retries" in result.output
