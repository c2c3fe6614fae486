"""Package assembly, manifest validation, archives, and verification."""

from __future__ import annotations

import json
import zipfile
from pathlib import Path

import pytest

from CollectorKit.ToolManager.downloader import download
from CollectorKit.ToolManager.errors import (
    AssemblyCollisionError,
    ErrorKind,
    NotFoundError,
    ParseError,
)
from CollectorKit.ToolManager.package import (
    PackageOptions,
    assemble_package,
    load_manifest,
    verify_package,
    write_archive,
)
from CollectorKit.ToolManager.scanner import scan
from CollectorKit.ToolManager.testing import (
    RequestRecorder,
    sha256_hex,
    use_mock_http_client,
    write_artifact,
)

X_URL = "http://e/x.exe"
X_BODY = b"tool x bytes"


def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def downloaded(artifact_root: Path, cache_dir: Path, config, recorder: RequestRecorder):
    """Scenario: A uses X; B uses X and Y, where Y has no download source."""

    write_artifact(artifact_root, "A.yaml", "A", [{"name": "X", "url": X_URL}])
    write_artifact(
        artifact_root, "windows/B.yaml", "B", [{"name": "X", "url": X_URL}, {"name": "Y"}]
    )
    recorder.routes[X_URL] = X_BODY
    result = scan(artifact_root, config=config)
    with use_mock_http_client(recorder.transport()):
        download(result.tool_database, cache_dir, config=config, sleep=_no_sleep)
    return result


def test_only_tools_of_included_artifacts_are_packaged(
    downloaded, cache_dir: Path, tmp_path: Path, config
):
    out = tmp_path / "out"

    assembled = assemble_package(
        downloaded, cache_dir, out, PackageOptions(artifact_names=["A"]), config=config
    )

    assert (out / "artifacts" / "A.yaml").is_file()
    assert not (out / "artifacts" / "windows").exists()
    assert sorted(path.name for path in (out / "tools").iterdir()) == ["X"]
    assert (out / "tools" / "X" / "x.exe").read_bytes() == X_BODY
    assert assembled.manifest.artifacts == ("A",)
    assert [tool.name for tool in assembled.manifest.tools] == ["X"]
    assert assembled.manifest.missing_tools == ()
    assert assembled.errors == []


def test_missing_tools_are_listed_not_fatal(downloaded, cache_dir: Path, tmp_path: Path, config):
    out = tmp_path / "out"

    assembled = assemble_package(downloaded, cache_dir, out, config=config)

    assert assembled.manifest.artifacts == ("A", "B")
    assert assembled.manifest.missing_tools == ("Y",)
    assert (out / "artifacts" / "windows" / "B.yaml").is_file()
    assert [error.subject for error in assembled.errors] == ["Y"]
    assert assembled.errors[0].kind is ErrorKind.NOT_FOUND
    assert "unresolved" in assembled.errors[0].message


def test_manifest_matches_layout_and_schema(downloaded, cache_dir: Path, tmp_path: Path, config):
    out = tmp_path / "out"

    assemble_package(downloaded, cache_dir, out, config=config)

    payload = json.loads((out / "manifest.json").read_text(encoding="utf-8"))
    assert set(payload) == {"artifacts", "tools", "missingTools", "createdAt"}
    assert payload["tools"] == [
        {"name": "X", "version": None, "hash": sha256_hex(X_BODY), "path": "tools/X/x.exe"}
    ]
    assert payload["createdAt"].endswith("Z")
    manifest = load_manifest(out)
    assert manifest.missing_tools == ("Y",)
    assert verify_package(out) == []


def test_reassembly_rebuilds_from_scratch(downloaded, cache_dir: Path, tmp_path: Path, config):
    out = tmp_path / "out"
    assemble_package(downloaded, cache_dir, out, config=config)
    stale = out / "tools" / "Stale" / "old.exe"
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"old")

    assemble_package(downloaded, cache_dir, out, PackageOptions(artifact_names=["a"]), config=config)

    assert not stale.exists()
    assert not (out / "artifacts" / "windows").exists()
    assert load_manifest(out).artifacts == ("A",)


def test_unknown_artifact_is_rejected_before_writing(
    downloaded, cache_dir: Path, tmp_path: Path, config
):
    out = tmp_path / "out"

    with pytest.raises(NotFoundError) as excinfo:
        assemble_package(
            downloaded, cache_dir, out, PackageOptions(artifact_names=["A", "Nope"]), config=config
        )

    assert "Nope" in str(excinfo.value)
    assert not out.exists()


def test_case_insensitive_collision_is_rejected(
    artifact_root: Path, cache_dir: Path, tmp_path: Path, config
):
    write_artifact(artifact_root, "lower/tool.yaml", "First")
    write_artifact(artifact_root, "LOWER/Tool.yaml", "Second")
    result = scan(artifact_root, config=config)
    if len(result.artifacts) < 2:
        pytest.skip("file system is case-insensitive")

    with pytest.raises(AssemblyCollisionError) as excinfo:
        assemble_package(result, cache_dir, tmp_path / "out", config=config)

    assert excinfo.value.kind is ErrorKind.ASSEMBLY_COLLISION
    assert not (tmp_path / "out").exists()


def test_tools_sharing_a_folder_name_are_not_fatal_when_not_copied(
    artifact_root: Path, cache_dir: Path, tmp_path: Path, config
):
    write_artifact(artifact_root, "A.yaml", "A", [{"name": "a b"}, {"name": "a_b"}])
    result = scan(artifact_root, config=config)

    assembled = assemble_package(result, cache_dir, tmp_path / "out", config=config)

    assert assembled.manifest.tools == ()
    assert assembled.manifest.missing_tools == ("a b", "a_b")
    assert {error.kind for error in assembled.errors} == {ErrorKind.NOT_FOUND}
    assert (tmp_path / "out" / "manifest.json").is_file()


def test_second_tool_mapping_to_a_taken_folder_is_missing(
    artifact_root: Path, cache_dir: Path, tmp_path: Path, config, recorder: RequestRecorder
):
    write_artifact(
        artifact_root,
        "A.yaml",
        "A",
        [{"name": "a b", "url": "http://e/one.exe"}, {"name": "A_B", "url": "http://e/two.exe"}],
    )
    recorder.routes["http://e/one.exe"] = b"one"
    recorder.routes["http://e/two.exe"] = b"two"
    result = scan(artifact_root, config=config)
    with use_mock_http_client(recorder.transport()):
        download(result.tool_database, cache_dir, config=config, sleep=_no_sleep)
    out = tmp_path / "out"

    assembled = assemble_package(result, cache_dir, out, config=config)

    assert [tool.name for tool in assembled.manifest.tools] == ["a b"]
    assert assembled.manifest.missing_tools == ("A_B",)
    assert [error.subject for error in assembled.errors] == ["A_B"]
    assert assembled.errors[0].kind is ErrorKind.ASSEMBLY_COLLISION
    assert sorted(path.name for path in (out / "tools" / "a_b").iterdir()) == ["one.exe"]
    assert verify_package(out) == []


def test_zip_archive_is_deterministic(downloaded, cache_dir: Path, tmp_path: Path, config):
    first = assemble_package(
        downloaded,
        cache_dir,
        tmp_path / "one",
        PackageOptions(compress=True, archive_path=tmp_path / "one.zip"),
        config=config,
    )
    second = assemble_package(
        downloaded,
        cache_dir,
        tmp_path / "two",
        PackageOptions(compress=True),
        config=config,
    )

    assert first.archive_path == tmp_path / "one.zip"
    assert second.archive_path == tmp_path / "two.zip"
    with zipfile.ZipFile(first.archive_path) as archive:
        names = archive.namelist()
        infos = archive.infolist()
    assert names == sorted(names)
    assert "manifest.json" in names
    assert "tools/X/x.exe" in names
    assert {info.date_time for info in infos} == {(1980, 1, 1, 0, 0, 0)}


def test_write_archive_bytes_do_not_depend_on_mtime(tmp_path: Path):
    source = tmp_path / "src"
    (source / "sub").mkdir(parents=True)
    (source / "b.txt").write_text("b", encoding="utf-8")
    (source / "sub" / "a.txt").write_text("a", encoding="utf-8")

    first = write_archive(source, tmp_path / "first.zip").read_bytes()
    for path in source.rglob("*.txt"):
        path.touch()
    second = write_archive(source, tmp_path / "second.zip").read_bytes()

    assert first == second


def test_verify_reports_tampering(downloaded, cache_dir: Path, tmp_path: Path, config):
    out = tmp_path / "out"
    assemble_package(downloaded, cache_dir, out, config=config)

    (out / "tools" / "X" / "x.exe").write_bytes(b"tampered")
    assert verify_package(out) == ["X: hash mismatch for tools/X/x.exe"]

    (out / "tools" / "X" / "x.exe").unlink()
    assert verify_package(out) == ["X: missing file tools/X/x.exe"]


def test_load_manifest_rejects_invalid_documents(tmp_path: Path):
    with pytest.raises(NotFoundError):
        load_manifest(tmp_path)

    (tmp_path / "manifest.json").write_text('{"artifacts": []}', encoding="utf-8")
    with pytest.raises(ParseError):
        load_manifest(tmp_path)

    (tmp_path / "manifest.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ParseError):
        load_manifest(tmp_path / "manifest.json")
