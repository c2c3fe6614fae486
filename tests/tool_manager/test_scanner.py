"""Artifact scanning: parsing, tool extraction, and partial-failure handling."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from CollectorKit.ToolManager.errors import ErrorKind, NotFoundError, ParseError
from CollectorKit.ToolManager.models import ArtifactType, DownloadStatus
from CollectorKit.ToolManager.scanner import extract_tool_references, parse_artifact, scan
from CollectorKit.ToolManager.testing import write_artifact


def test_two_artifacts_sharing_a_tool(artifact_root: Path, config):
    write_artifact(artifact_root, "A.yaml", "A", [{"name": "X", "url": "http://e/x"}])
    write_artifact(
        artifact_root,
        "B.yaml",
        "B",
        [{"name": "X", "url": "http://e/x"}, {"name": "Y"}],
    )

    result = scan(artifact_root, config=config)

    assert [artifact.name for artifact in result.artifacts] == ["A", "B"]
    registry = result.tool_database
    assert list(registry) == ["X", "Y"]
    assert registry["X"].used_by_artifacts == {"A", "B"}
    assert registry["X"].canonical_url == "http://e/x"
    assert registry["Y"].used_by_artifacts == {"B"}
    assert registry["Y"].canonical_url == ""
    assert all(tool.download_status is DownloadStatus.PENDING for tool in registry.values())
    assert result.errors == []


def test_malformed_files_are_recorded_and_scan_continues(artifact_root: Path, config):
    write_artifact(artifact_root, "good.yaml", "Good", [{"name": "T", "url": "http://e/t"}])
    write_artifact(artifact_root, "broken.yaml", raw="name: [unclosed\n")
    write_artifact(artifact_root, "binary.yaml", raw=b"\xff\xfe\x00garbage")
    write_artifact(artifact_root, "list.yaml", raw="- just\n- a list\n")
    write_artifact(artifact_root, "empty.yml", raw="")

    result = scan(artifact_root, config=config)

    assert [artifact.name for artifact in result.artifacts] == ["Good"]
    assert len(result.errors) == 4
    assert {error.kind for error in result.errors} == {ErrorKind.PARSE}
    subjects = sorted(Path(error.subject).name for error in result.errors)
    assert subjects == ["binary.yaml", "broken.yaml", "empty.yml", "list.yaml"]
    assert "4 failed to parse" in result.summary()


def test_missing_root_raises_not_found(tmp_path: Path, config):
    with pytest.raises(NotFoundError):
        scan(tmp_path / "does-not-exist", config=config)


def test_empty_directory_yields_empty_result(artifact_root: Path, config):
    result = scan(artifact_root, config=config)

    assert result.artifacts == []
    assert len(result.tool_database) == 0
    assert result.errors == []


def test_single_file_scan(artifact_root: Path, config):
    path = write_artifact(artifact_root, "nested/one.yaml", "One", [{"name": "T"}])

    result = scan(path, config=config)

    assert [artifact.name for artifact in result.artifacts] == ["One"]
    assert result.artifacts[0].relative_path == "one.yaml"


def test_include_patterns_and_extensions(artifact_root: Path, config):
    write_artifact(artifact_root, "windows/Win.Triage.yaml", "Win.Triage")
    write_artifact(artifact_root, "linux/Linux.Triage.yaml", "Linux.Triage")
    (artifact_root / "notes.txt").write_text("name: ignored\n", encoding="utf-8")

    result = scan(artifact_root, ["windows/*"], config=config)

    assert [artifact.name for artifact in result.artifacts] == ["Win.Triage"]
    assert result.artifacts[0].relative_path == "windows/Win.Triage.yaml"


def test_duplicate_artifact_names_keep_first(artifact_root: Path, config):
    write_artifact(artifact_root, "a/first.yaml", "Same", [{"name": "One", "url": "http://e/1"}])
    write_artifact(artifact_root, "b/second.yaml", "same", [{"name": "Two", "url": "http://e/2"}])

    result = scan(artifact_root, config=config)

    assert [artifact.relative_path for artifact in result.artifacts] == ["a/first.yaml"]
    assert list(result.tool_database) == ["One"]
    assert result.errors[0].kind is ErrorKind.PARSE
    assert "duplicate artifact name" in result.errors[0].message


def test_parse_artifact_reads_metadata(artifact_root: Path):
    path = write_artifact(
        artifact_root,
        "Server.Collect.yaml",
        "Server.Collect",
        [],
        extra={"type": "SERVER_EVENT", "author": "IR team", "description": "Collects things"},
    )

    artifact = parse_artifact(path, artifact_root)

    assert artifact.type is ArtifactType.SERVER
    assert artifact.author == "IR team"
    assert artifact.description == "Collects things"
    assert artifact.tools == ()


def test_parse_artifact_falls_back_to_stem(artifact_root: Path):
    path = artifact_root / "Unnamed.yaml"
    path.write_text(yaml.safe_dump({"description": "no name"}), encoding="utf-8")

    assert parse_artifact(path, artifact_root).name == "Unnamed"


def test_parse_error_carries_line(artifact_root: Path):
    path = write_artifact(artifact_root, "bad.yaml", raw="name: ok\ntools: [\n  - {name: x\n")

    with pytest.raises(ParseError) as excinfo:
        parse_artifact(path, artifact_root)

    assert excinfo.value.context["path"] == str(path)
    assert "line" in excinfo.value.context


def test_extract_tool_references_structural_rules():
    document = {
        "name": "Mixed",
        "tools": [
            {"name": "Listed", "url": "http://e/listed", "version": "2.1", "sha256": "A" * 64},
            {"name": "NoUrl"},
            "not a mapping",
        ],
        "sources": [
            {"query": "SELECT 1", "helper_tools": [{"name": "Nested", "github_project": "o/r"}]},
        ],
        "imports": [{"name": "Downloaded", "download_url": "http://e/d"}],
        "parameters": [{"name": "Path", "default": "C:/"}],
    }

    references = extract_tool_references(document)

    names = [reference.name for reference in references]
    assert names == ["Listed", "NoUrl", "Nested", "Downloaded"]
    listed = references[0]
    assert listed.version == "2.1"
    assert listed.expected_hash == "A" * 64
    assert references[2].github_project == "o/r"
    assert references[3].url == "http://e/d"


def test_extract_tool_references_collapses_duplicates():
    document = {
        "tools": [
            {"name": "Dup", "url": "http://e/dup"},
            {"name": "dup", "url": "http://e/dup"},
            {"name": "Dup", "url": "http://e/other"},
        ]
    }

    references = extract_tool_references(document)

    assert [(ref.name, ref.url) for ref in references] == [
        ("Dup", "http://e/dup"),
        ("Dup", "http://e/other"),
    ]
