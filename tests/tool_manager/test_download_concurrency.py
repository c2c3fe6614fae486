"""Bounded concurrency, cancellation, and report completeness for batch downloads."""

from __future__ import annotations

import tempfile
import time
from pathlib import Path

import httpx
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from CollectorKit.ToolManager.cancellation import CancellationToken
from CollectorKit.ToolManager.downloader import download
from CollectorKit.ToolManager.models import Artifact, DownloadStatus, ToolReference
from CollectorKit.ToolManager.registry import build_registry
from CollectorKit.ToolManager.testing import RequestRecorder, make_config, sha256_hex

BASE = "https://tools.example.org/bin"


def _no_sleep(_seconds: float) -> None:
    return None


def _registry_with(count: int, recorder: RequestRecorder):
    references = []
    for index in range(count):
        url = f"{BASE}/tool{index:02d}.exe"
        body = f"tool {index}".encode("utf-8")
        recorder.routes[url] = body
        references.append(ToolReference(f"Tool{index:02d}", url=url, expected_hash=sha256_hex(body)))
    artifact = Artifact(
        name="Bulk",
        source_path=Path("/defs/Bulk.yaml"),
        relative_path="Bulk.yaml",
        tools=tuple(references),
    )
    return build_registry([artifact])


def test_in_flight_requests_never_exceed_limit(recorder: RequestRecorder, cache_dir: Path, config):
    recorder.delay = lambda _request: time.sleep(0.02)
    registry = _registry_with(8, recorder)
    client = httpx.Client(transport=recorder.transport())

    report = download(registry, cache_dir, 2, config=config, client=client, sleep=_no_sleep)

    assert len(report.verified) == 8
    assert 1 <= recorder.max_in_flight <= 2


def test_single_worker_is_sequential(recorder: RequestRecorder, cache_dir: Path, config):
    recorder.delay = lambda _request: time.sleep(0.005)
    registry = _registry_with(4, recorder)
    client = httpx.Client(transport=recorder.transport())

    report = download(registry, cache_dir, 1, config=config, client=client, sleep=_no_sleep)

    assert len(report.verified) == 4
    assert recorder.max_in_flight == 1
    assert [str(request.url) for request in recorder.requests] == [
        f"{BASE}/tool{index:02d}.exe" for index in range(4)
    ]


def test_cancellation_stops_dispatch_and_leaves_rest_pending(
    recorder: RequestRecorder, cache_dir: Path, config
):
    registry = _registry_with(5, recorder)
    client = httpx.Client(transport=recorder.transport())
    token = CancellationToken()

    report = download(
        registry,
        cache_dir,
        1,
        config=config,
        client=client,
        cancellation_token=token,
        progress=lambda _outcome: token.cancel(),
        sleep=_no_sleep,
    )

    assert report.cancelled
    assert report.verified == ["Tool00"]
    assert report.not_attempted == ["Tool01", "Tool02", "Tool03", "Tool04"]
    for name in report.not_attempted:
        assert registry[name].download_status is DownloadStatus.PENDING
    assert "1 downloaded" in report.summary()
    assert "4 not attempted" in report.summary()


def test_cancelled_before_start_dispatches_nothing(
    recorder: RequestRecorder, cache_dir: Path, config
):
    registry = _registry_with(3, recorder)
    token = CancellationToken()
    token.cancel()

    report = download(
        registry,
        cache_dir,
        config=config,
        client=httpx.Client(transport=recorder.transport()),
        cancellation_token=token,
    )

    assert report.outcomes == []
    assert len(report.not_attempted) == 3
    assert recorder.requests == []


def test_abort_in_flight_abandons_the_transfer(recorder: RequestRecorder, cache_dir: Path, config):
    token = CancellationToken(abort_in_flight=True)
    url = f"{BASE}/tool00.exe"

    class _CancelMidway(httpx.SyncByteStream):
        def __iter__(self):
            yield b"first"
            token.cancel()
            yield b"second"

    recorder.routes[url] = lambda _request: httpx.Response(200, stream=_CancelMidway())
    registry = build_registry(
        [
            Artifact(
                name="Bulk",
                source_path=Path("/defs/Bulk.yaml"),
                relative_path="Bulk.yaml",
                tools=(ToolReference("Tool00", url=url),),
            )
        ]
    )

    report = download(
        registry,
        cache_dir,
        config=config,
        client=httpx.Client(transport=recorder.transport()),
        cancellation_token=token,
        sleep=_no_sleep,
    )

    assert report.cancelled
    assert report.failed == ["Tool00"]
    assert "cancelled" in report.outcome("Tool00").error.message
    assert recorder.count(url) == 1
    assert [path for path in cache_dir.rglob("*") if path.is_file()] == []

    plain = CancellationToken()
    plain.cancel()
    assert plain.is_cancelled()
    assert not plain.should_abort_transfer()


_BEHAVIOURS = st.sampled_from(["ok", "missing", "mismatch", "no-url"])


@settings(
    max_examples=20,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)
@given(behaviours=st.lists(_BEHAVIOURS, min_size=0, max_size=6), workers=st.integers(1, 4))
def test_report_accounts_for_every_pending_tool(behaviours, workers):
    recorder = RequestRecorder()
    references = []
    for index, behaviour in enumerate(behaviours):
        url = f"{BASE}/p{index}.bin"
        body = f"payload {index}".encode("utf-8")
        if behaviour == "ok":
            recorder.routes[url] = body
            references.append(ToolReference(f"P{index}", url=url, expected_hash=sha256_hex(body)))
        elif behaviour == "missing":
            references.append(ToolReference(f"P{index}", url=url))
        elif behaviour == "mismatch":
            recorder.routes[url] = body
            references.append(ToolReference(f"P{index}", url=url, expected_hash="1" * 64))
        else:
            references.append(ToolReference(f"P{index}"))
    registry = build_registry(
        [
            Artifact(
                name="Prop",
                source_path=Path("/defs/Prop.yaml"),
                relative_path="Prop.yaml",
                tools=tuple(references),
            )
        ]
    )

    with tempfile.TemporaryDirectory() as tmp:
        cache_dir = Path(tmp)
        report = download(
            registry,
            cache_dir,
            workers,
            config=make_config(cache_dir, max_retries=0),
            client=httpx.Client(transport=recorder.transport()),
            sleep=_no_sleep,
        )
        leftovers = list(cache_dir.rglob("*.part"))

    names = [outcome.name for outcome in report.outcomes] + report.not_attempted
    assert sorted(names) == sorted(tool.name for tool in registry.values())
    assert len(names) == len(set(names))
    assert len(report.verified) == behaviours.count("ok")
    assert len(report.failed) == len(behaviours) - behaviours.count("ok")
    assert all(
        tool.download_status in (DownloadStatus.VERIFIED, DownloadStatus.FAILED)
        for tool in registry.values()
    )
    assert leftovers == []
