"""
speedcheck_server/metrics.py

In-process server counters — the observability sink for completed
transfers.

Download:
    ByteStreamGenerator reports the byte total of every stream that ran
    to completion. Streams cut short by a client disconnect are counted
    separately and contribute nothing to the byte total.

Upload:
    UploadReceiver reports receivedBytes for every upload that finished
    normally.

Inflight:
    Mirrors the AdmissionController counter so /health can show it.

All counters are protected by one lock: the aiohttp handlers run on the
event loop thread while tests and the CLI read snapshots from others.
"""

import time
import threading
import logging
from collections import deque
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Number of recent completed transfers kept for debugging / display
HISTORY_WINDOW = 50


@dataclass
class ServerStats:
    lock: threading.Lock = field(default_factory=threading.Lock)
    started_at: float = field(default_factory=time.monotonic)

    download_bytes_total: int = 0
    downloads_completed: int = 0
    downloads_disconnected: int = 0

    upload_bytes_total: int = 0
    uploads_completed: int = 0
    uploads_rejected: int = 0

    inflight: int = 0
    overload_rejections: int = 0

    history: deque = field(default_factory=lambda: deque(maxlen=HISTORY_WINDOW))

    def record_download(self, n: int) -> None:
        with self.lock:
            self.download_bytes_total += n
            self.downloads_completed += 1
            self.history.append(("download", n, time.monotonic()))
        logger.debug("Download complete: %d bytes", n)

    def record_download_disconnect(self, sent: int) -> None:
        with self.lock:
            self.downloads_disconnected += 1

    def record_upload(self, n: int) -> None:
        with self.lock:
            self.upload_bytes_total += n
            self.uploads_completed += 1
            self.history.append(("upload", n, time.monotonic()))
        logger.debug("Upload complete: %d bytes", n)

    def record_upload_rejected(self) -> None:
        with self.lock:
            self.uploads_rejected += 1

    def record_overload(self) -> None:
        with self.lock:
            self.overload_rejections += 1

    def set_inflight(self, n: int) -> None:
        with self.lock:
            self.inflight = n

    def uptime_s(self) -> float:
        return time.monotonic() - self.started_at

    def snapshot(self) -> dict:
        with self.lock:
            return {
                "uptime":                round(time.monotonic() - self.started_at, 3),
                "inflight":              self.inflight,
                "downloadBytesTotal":    self.download_bytes_total,
                "downloadsCompleted":    self.downloads_completed,
                "downloadsDisconnected": self.downloads_disconnected,
                "uploadBytesTotal":      self.upload_bytes_total,
                "uploadsCompleted":      self.uploads_completed,
                "uploadsRejected":       self.uploads_rejected,
                "overloadRejections":    self.overload_rejections,
            }
