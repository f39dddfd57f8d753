import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests

from speedcheck_server.client import SpeedCheckClient
from speedcheck_server.config import MIB, ClientConfig
from speedcheck_server.errors import NoSamplesError, PhaseCancelled, TransportError
from speedcheck_server.latency import LatencyProbe
from speedcheck_server.transfer import (
    Direction,
    StopReason,
    TransferOrchestrator,
    TransferStream,
    make_payload_block,
)
from speedcheck_server.transport import HttpTransport, PayloadReader


def make_stream(transport, stream_id=0, direction=Direction.UPLOAD):
    return TransferStream(
        stream_id=stream_id,
        direction=direction,
        transport=transport,
        stop_event=threading.Event(),
        cancel_event=threading.Event(),
        deadline=time.monotonic() + 60,
    )


@pytest.fixture
def transport(live_server):
    t = HttpTransport(live_server.base_url, download_size_mb=5, download_chunk_kb=256, upload_size_mb=2)
    yield t
    t.close()


def test_parallel_uploads_at_ceiling_fraction_all_succeed(live_server):
    transport = HttpTransport(live_server.base_url, upload_size_mb=10)
    payload = make_payload_block()
    try:
        with ThreadPoolExecutor(max_workers=5) as pool:
            futures = [
                pool.submit(transport.upload, make_stream(transport, i), payload)
                for i in range(5)
            ]
            accepted = [f.result(timeout=60) for f in futures]
    finally:
        transport.close()

    assert accepted == [10 * MIB] * 5
    health = requests.get(live_server.base_url + "/health", timeout=5).json()
    assert health["uploadsCompleted"] == 5
    assert health["uploadsRejected"] == 0


def test_payload_reader_counts_and_marks_transmission():
    stream = make_stream(None)
    reader = PayloadReader(b"abcdefgh", 20, stream)
    assert len(reader) == 20

    chunks = []
    while True:
        data = reader.read(6)
        if not data:
            break
        chunks.append(data)

    assert b"".join(chunks) == b"abcdefghabcdefghabcd"
    assert stream.counter.bytes == 20
    assert stream._transmitted_at is not None


def test_payload_reader_stops_on_abort():
    stream = make_stream(None)
    reader = PayloadReader(b"x" * 16, 1000, stream)
    reader.read(8)
    stream.abort()
    with pytest.raises(TransportError):
        reader.read(8)


def test_download_phase_over_http(transport):
    orchestrator = TransferOrchestrator(transport, tick_s=0.05, sample_interval_s=0.1, grace_s=3)
    result = orchestrator.run_phase("download", 2, 300, 1000)

    assert result.bytes_transferred > 0
    assert result.speed_mbps > 0
    assert result.stop_reason in (StopReason.STABILIZED, StopReason.MAX_DURATION_REACHED)
    assert all(r.error is None for r in result.thread_results)


def test_upload_phase_over_http(transport, live_server):
    orchestrator = TransferOrchestrator(transport, tick_s=0.05, sample_interval_s=0.1, grace_s=3)
    result = orchestrator.run_phase("upload", 2, 300, 1000)

    assert result.bytes_transferred > 0
    assert result.speed_mbps > 0
    assert live_server.stats.uploads_rejected == 0


def test_cancel_download_over_http(live_server):
    transport = HttpTransport(live_server.base_url, download_size_mb=50, download_chunk_kb=64)
    orchestrator = TransferOrchestrator(transport, tick_s=0.05, sample_interval_s=0.1, grace_s=3)
    box = {}

    def run():
        try:
            orchestrator.run_phase("download", 3, 10_000, 20_000)
        except PhaseCancelled as exc:
            box["error"] = exc

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    time.sleep(0.5)
    orchestrator.cancel()
    thread.join(timeout=5)
    transport.close()

    assert not thread.is_alive()
    assert isinstance(box.get("error"), PhaseCancelled)

    deadline = time.monotonic() + 5
    while live_server.stats.inflight and time.monotonic() < deadline:
        time.sleep(0.05)
    assert live_server.stats.inflight == 0


def test_latency_probe_over_http(transport):
    result = LatencyProbe(transport.ping, count=3, spacing=0.01).measure()
    assert len(result.samples) == 3
    assert result.failed == 0
    assert result.average_ms > 0


def test_latency_probe_unreachable_server():
    transport = HttpTransport("http://127.0.0.1:9", connect_timeout=1, read_timeout=1)
    try:
        with pytest.raises(NoSamplesError, match="No latency samples collected"):
            LatencyProbe(transport.ping, count=2, spacing=0).measure()
    finally:
        transport.close()


def test_full_client_run(live_server):
    config = ClientConfig(
        base_url=live_server.base_url,
        download_threads=2,
        upload_threads=2,
        download_min_s=0.3,
        download_max_s=0.8,
        upload_min_s=0.3,
        upload_max_s=0.8,
        download_size_mb=5,
        upload_size_mb=1,
        ping_count=3,
        ping_spacing_s=0.01,
        grace_s=3,
        tick_s=0.05,
        sample_interval_s=0.1,
    )
    report = SpeedCheckClient(config, show_progress=False).run()

    assert report is not None
    assert report.latency.average_ms > 0
    assert report.download.direction is Direction.DOWNLOAD
    assert report.upload.direction is Direction.UPLOAD
    summary = report.to_dict()
    assert summary["download"]["speed_mbps"] > 0
    assert summary["upload"]["speed_mbps"] > 0
