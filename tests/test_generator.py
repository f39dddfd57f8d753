import asyncio

import pytest

from speedcheck_server.config import KIB, MIB
from speedcheck_server.generator import ByteStreamGenerator, StreamPlan
from speedcheck_server.metrics import ServerStats


class FakeSink:
    """Transport stand-in with a write buffer that must drain past high_water."""

    def __init__(self, high_water=256 * KIB, close_after_writes=None, fail_after_writes=None):
        self.high_water = high_water
        self.close_after_writes = close_after_writes
        self.fail_after_writes = fail_after_writes
        self.buffered = 0
        self.peak_buffered = 0
        self.total = 0
        self.sizes = []
        self.drains = 0

    async def write(self, data):
        if self.fail_after_writes is not None and len(self.sizes) >= self.fail_after_writes:
            raise ConnectionResetError("peer reset")
        self.sizes.append(len(data))
        self.total += len(data)
        self.buffered += len(data)
        self.peak_buffered = max(self.peak_buffered, self.buffered)
        if self.buffered > self.high_water:
            self.drains += 1
            await asyncio.sleep(0)
            self.buffered = 0

    def is_closing(self):
        return self.close_after_writes is not None and len(self.sizes) >= self.close_after_writes


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def gen():
    return ByteStreamGenerator(max_size_mb=50)


def test_plan_defaults(gen):
    plan = gen.plan(None, None)
    assert plan == StreamPlan(size_bytes=5 * MIB, chunk_bytes=64 * KIB)


@pytest.mark.parametrize("size, expected_mb", [
    ("1", 1),
    ("10", 10),
    ("50", 50),
    ("999", 50),
    ("0", 1),
    ("-3", 1),
    ("abc", 5),
    ("", 5),
    (" 7 ", 7),
])
def test_plan_size_parsing(gen, size, expected_mb):
    assert gen.plan(size, None).size_bytes == expected_mb * MIB


@pytest.mark.parametrize("chunk, expected_kb", [
    ("4", 16),
    ("16", 16),
    ("512", 512),
    ("4096", 1024),
    ("zz", 64),
])
def test_plan_chunk_parsing(gen, chunk, expected_kb):
    assert gen.plan("1", chunk).chunk_bytes == expected_kb * KIB


def test_chunk_count_rounds_up():
    assert StreamPlan(3 * MIB, 1000 * KIB).chunk_count == 4
    assert StreamPlan(1 * MIB, 64 * KIB).chunk_count == 16


@pytest.mark.parametrize("size_mb, chunk_kb", [(1, 64), (3, 1000), (2, 16), (1, 1024)])
def test_stream_emits_exact_byte_count(size_mb, chunk_kb):
    gen = ByteStreamGenerator(max_size_mb=50)
    plan = gen.plan(str(size_mb), str(chunk_kb))
    sink = FakeSink()

    sent = run(gen.stream(plan, sink))

    assert sent == size_mb * MIB
    assert sink.total == size_mb * MIB
    assert len(sink.sizes) == plan.chunk_count
    assert all(s == plan.chunk_bytes for s in sink.sizes[:-1])
    assert 0 < sink.sizes[-1] <= plan.chunk_bytes


def test_clamped_request_streams_the_ceiling():
    gen = ByteStreamGenerator(max_size_mb=50)
    sink = FakeSink(high_water=4 * MIB)
    sent = run(gen.stream(gen.plan("999", "1024"), sink))
    assert sent == 50 * MIB


def test_stream_waits_for_drain():
    gen = ByteStreamGenerator(max_size_mb=50)
    sink = FakeSink(high_water=128 * KIB)
    plan = gen.plan("2", "64")

    run(gen.stream(plan, sink))

    assert sink.drains > 0
    assert sink.peak_buffered <= sink.high_water + plan.chunk_bytes


def test_content_is_random():
    collected = []

    class Capturing(FakeSink):
        async def write(self, data):
            collected.append(data)
            await super().write(data)

    gen = ByteStreamGenerator(max_size_mb=50)
    run(gen.stream(gen.plan("1", "64"), Capturing()))
    assert len(set(collected)) == len(collected)
    assert collected[0] != bytes(len(collected[0]))


def test_disconnect_stops_quietly():
    stats = ServerStats()
    gen = ByteStreamGenerator(max_size_mb=50, stats=stats)
    sink = FakeSink(close_after_writes=3)

    sent = run(gen.stream(gen.plan("5", "64"), sink))

    assert sent == 3 * 64 * KIB
    assert stats.downloads_disconnected == 1
    assert stats.downloads_completed == 0
    assert stats.download_bytes_total == 0


def test_write_error_treated_as_disconnect():
    stats = ServerStats()
    gen = ByteStreamGenerator(max_size_mb=50, stats=stats)
    sink = FakeSink(fail_after_writes=2)

    sent = run(gen.stream(gen.plan("1", "64"), sink))

    assert sent == 2 * 64 * KIB
    assert stats.downloads_disconnected == 1


def test_completed_stream_recorded():
    stats = ServerStats()
    gen = ByteStreamGenerator(max_size_mb=50, stats=stats)
    run(gen.stream(gen.plan("1", "256"), FakeSink()))
    assert stats.downloads_completed == 1
    assert stats.download_bytes_total == MIB
