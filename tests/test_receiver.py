import asyncio

import pytest

from speedcheck_server.config import KIB, MIB
from speedcheck_server.errors import PayloadTooLarge
from speedcheck_server.metrics import ServerStats
from speedcheck_server.receiver import UploadIngest, UploadReceiver


class StepClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now


async def body(chunk_size, count, clock=None, step=0.0, fail_at=None):
    for i in range(count):
        if fail_at is not None and i == fail_at:
            raise ConnectionResetError("peer went away")
        if clock is not None:
            clock.now += step
        yield b"\x00" * chunk_size


def run(coro):
    return asyncio.run(coro)


def test_receive_counts_every_byte():
    stats = ServerStats()
    clock = StepClock()
    receiver = UploadReceiver(limit_bytes=50 * MIB, stats=stats, clock=clock)

    result = run(receiver.receive(body(64 * KIB, 16, clock=clock, step=0.01)))

    assert result.received_bytes == MIB
    # first byte at step 1, end after step 16
    assert result.duration_ms == pytest.approx(150.0)
    assert result.speed_mbps == pytest.approx(MIB * 8 / (0.15 * 1e6), abs=0.01)
    assert stats.uploads_completed == 1
    assert stats.upload_bytes_total == MIB


def test_result_json_shape():
    clock = StepClock()
    receiver = UploadReceiver(limit_bytes=MIB, clock=clock)
    result = run(receiver.receive(body(1000, 2, clock=clock, step=0.5)))
    assert result.to_json() == {
        "success": True,
        "receivedBytes": 2000,
        "durationMs": 500.0,
        "speedMbps": 0.03,
    }


def test_empty_body_has_zero_speed():
    receiver = UploadReceiver(limit_bytes=MIB)
    result = run(receiver.receive(body(1, 0)))
    assert result.received_bytes == 0
    assert result.speed_mbps == 0.0
    assert result.duration_ms == 0.0


def test_over_limit_is_rejected_within_one_chunk():
    stats = ServerStats()
    receiver = UploadReceiver(limit_bytes=MIB, stats=stats)

    with pytest.raises(PayloadTooLarge) as excinfo:
        run(receiver.receive(body(64 * KIB, 40)))

    assert excinfo.value.limit_bytes == MIB
    assert MIB < excinfo.value.received_bytes <= MIB + 64 * KIB
    assert stats.uploads_rejected == 1
    assert stats.uploads_completed == 0


def test_upload_at_exact_limit_is_accepted():
    receiver = UploadReceiver(limit_bytes=MIB)
    result = run(receiver.receive(body(64 * KIB, 16)))
    assert result.received_bytes == MIB


def test_ingest_ignores_data_after_rejection():
    ingest = UploadIngest(limit_bytes=100)
    ingest.feed(b"x" * 60)
    with pytest.raises(PayloadTooLarge):
        ingest.feed(b"x" * 60)
    assert ingest.state == "rejected"

    ingest.feed(b"x" * 1000)
    assert ingest.received_bytes == 120
    assert ingest.finish() is None


def test_ingest_finish_once():
    ingest = UploadIngest(limit_bytes=100)
    ingest.feed(b"abc")
    assert ingest.finish() is not None
    assert ingest.finish() is None
    ingest.feed(b"more")
    assert ingest.received_bytes == 3


def test_disconnect_returns_none_without_raising():
    stats = ServerStats()
    receiver = UploadReceiver(limit_bytes=50 * MIB, stats=stats)

    result = run(receiver.receive(body(64 * KIB, 10, fail_at=4)))

    assert result is None
    assert stats.uploads_completed == 0
    assert stats.uploads_rejected == 0


def test_disconnected_ingest_is_terminal():
    ingest = UploadIngest(limit_bytes=100)
    ingest.feed(b"ab")
    ingest.disconnect()
    assert ingest.is_terminal
    assert ingest.finish() is None
