"""
speedcheck_server/generator.py

ByteStreamGenerator — produces the body of a download request.

Responsibilities:
  - Turn the raw ?size=<MB>&chunk=<KB> query values into a StreamPlan.
    Missing or malformed values fall back to defaults and every value is
    clamped; parsing never fails.
  - Emit exactly plan.size_bytes of os.urandom() content in chunks of
    plan.chunk_bytes (the last chunk truncated to the remainder).
  - Honour backpressure: every chunk goes through one awaited
    sink.write(), which suspends while the transport buffer is full.
  - Check for a peer disconnect between chunks and stop quietly.
  - Report completed streams to ServerStats.

The sink is anything with:
    async write(data: bytes) -> None   # returns once the data is buffered
                                       # below the transport's high-water mark
    is_closing() -> bool               # peer went away
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from speedcheck_server.config import (
    KIB,
    MIB,
    CHUNK_SIZE_BOUNDS_KB,
    DEFAULT_CHUNK_KB,
    DEFAULT_DOWNLOAD_SIZE_MB,
    DEFAULT_MAX_DOWNLOAD_MB,
)
from speedcheck_server.metrics import ServerStats

logger = logging.getLogger(__name__)


def _parse_int(raw) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


@dataclass(frozen=True)
class StreamPlan:
    size_bytes: int
    chunk_bytes: int

    @property
    def chunk_count(self) -> int:
        return -(-self.size_bytes // self.chunk_bytes)


class ByteStreamGenerator:
    """
    Stateless per request; one instance serves the whole process.

    Usage:
        gen  = ByteStreamGenerator(max_size_mb=50)
        plan = gen.plan(request.query.get("size"), request.query.get("chunk"))
        sent = await gen.stream(plan, sink)
    """

    def __init__(
        self,
        max_size_mb: int = DEFAULT_MAX_DOWNLOAD_MB,
        default_size_mb: int = DEFAULT_DOWNLOAD_SIZE_MB,
        default_chunk_kb: int = DEFAULT_CHUNK_KB,
        chunk_bounds_kb: tuple = CHUNK_SIZE_BOUNDS_KB,
        stats: Optional[ServerStats] = None,
    ) -> None:
        self.max_size_mb      = max_size_mb
        self.default_size_mb  = default_size_mb
        self.default_chunk_kb = default_chunk_kb
        self.chunk_bounds_kb  = chunk_bounds_kb
        self._stats           = stats

    def plan(self, size_param=None, chunk_param=None) -> StreamPlan:
        size_mb = _parse_int(size_param)
        if size_mb is None:
            size_mb = self.default_size_mb
        size_mb = _clamp(size_mb, 1, self.max_size_mb)

        chunk_kb = _parse_int(chunk_param)
        if chunk_kb is None:
            chunk_kb = self.default_chunk_kb
        chunk_kb = _clamp(chunk_kb, *self.chunk_bounds_kb)

        return StreamPlan(size_bytes=size_mb * MIB, chunk_bytes=chunk_kb * KIB)

    async def stream(self, plan: StreamPlan, sink) -> int:
        """
        Write the planned byte count to sink.

        Returns the number of bytes written. Less than plan.size_bytes means
        the peer disconnected; that is not an error.
        """
        sent = 0
        while sent < plan.size_bytes:
            if sink.is_closing():
                break
            n = min(plan.chunk_bytes, plan.size_bytes - sent)
            try:
                await sink.write(os.urandom(n))
            except ConnectionError:
                break
            sent += n

        if sent < plan.size_bytes:
            logger.debug(
                "Client disconnected during download (%d/%d bytes)",
                sent, plan.size_bytes,
            )
            if self._stats is not None:
                self._stats.record_download_disconnect(sent)
        elif self._stats is not None:
            self._stats.record_download(sent)
        return sent
