"""
speedcheck_server/receiver.py

UploadReceiver — ingests one upload body and measures it.

Per request an UploadIngest accumulates byte counts as chunks arrive:
  - The clock starts at the first received byte and stops at end-of-body.
  - When the running total passes the ceiling, the ingest turns terminal
    and raises PayloadTooLarge once. Data arriving after that is ignored,
    so no more than ceiling + one chunk is ever counted.
  - A peer disconnect ends the ingest without a result and without
    raising.

Once terminal (finished, rejected or disconnected) an ingest produces
nothing further; the HTTP layer therefore answers each request at most
once.
"""

import time
import logging
from dataclasses import dataclass
from typing import AsyncIterable, Callable, Optional

from aiohttp.http_exceptions import HttpProcessingError

from speedcheck_server.errors import PayloadTooLarge
from speedcheck_server.metrics import ServerStats

logger = logging.getLogger(__name__)

_RECEIVING    = "receiving"
_FINISHED     = "finished"
_REJECTED     = "rejected"
_DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class UploadResult:
    received_bytes: int
    duration_ms: float
    speed_mbps: float

    def to_json(self) -> dict:
        return {
            "success":       True,
            "receivedBytes": self.received_bytes,
            "durationMs":    round(self.duration_ms, 3),
            "speedMbps":     self.speed_mbps,
        }


class UploadIngest:
    """State for a single upload request."""

    def __init__(
        self,
        limit_bytes: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit_bytes    = limit_bytes
        self.received_bytes = 0
        self._clock         = clock
        self._first_byte_at: Optional[float] = None
        self._state         = _RECEIVING

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state != _RECEIVING

    def feed(self, data: bytes) -> None:
        """Count one chunk. Raises PayloadTooLarge the first time the ceiling is passed."""
        if self.is_terminal or not data:
            return
        if self._first_byte_at is None:
            self._first_byte_at = self._clock()
        self.received_bytes += len(data)
        if self.received_bytes > self.limit_bytes:
            self._state = _REJECTED
            logger.warning(
                "Upload size exceeded limit: received=%d limit=%d",
                self.received_bytes, self.limit_bytes,
            )
            raise PayloadTooLarge(self.limit_bytes, self.received_bytes)

    def finish(self) -> Optional[UploadResult]:
        """End of body. Returns the result, or None if already terminal."""
        if self.is_terminal:
            return None
        self._state = _FINISHED
        if self._first_byte_at is None:
            duration_s = 0.0
        else:
            duration_s = max(0.0, self._clock() - self._first_byte_at)
        speed = (
            round((self.received_bytes * 8) / (duration_s * 1e6), 2)
            if duration_s > 0 else 0.0
        )
        return UploadResult(
            received_bytes=self.received_bytes,
            duration_ms=duration_s * 1000.0,
            speed_mbps=speed,
        )

    def disconnect(self) -> None:
        if self.is_terminal:
            return
        self._state = _DISCONNECTED
        logger.debug("Client disconnected during upload (%d bytes)", self.received_bytes)


class UploadReceiver:
    """
    Usage:
        receiver = UploadReceiver(limit_bytes=50 * MIB)
        result = await receiver.receive(request.content.iter_any())
        # UploadResult, or None if the peer went away; PayloadTooLarge raised
    """

    def __init__(
        self,
        limit_bytes: int,
        stats: Optional[ServerStats] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit_bytes = limit_bytes
        self._stats      = stats
        self._clock      = clock

    def new_ingest(self) -> UploadIngest:
        return UploadIngest(self.limit_bytes, clock=self._clock)

    async def receive(self, chunks: AsyncIterable[bytes]) -> Optional[UploadResult]:
        ingest = self.new_ingest()
        try:
            async for data in chunks:
                ingest.feed(data)
        except PayloadTooLarge:
            if self._stats is not None:
                self._stats.record_upload_rejected()
            raise
        except (ConnectionError, HttpProcessingError):
            ingest.disconnect()
            return None

        result = ingest.finish()
        if result is not None and self._stats is not None:
            self._stats.record_upload(result.received_bytes)
        return result
