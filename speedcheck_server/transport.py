"""
speedcheck_server/transport.py

HttpTransport — the client's network layer, built on requests.

One requests.Session per transfer thread, so every thread gets its own
TCP connection (the parallel streams are real parallel connections).

Operations used by the orchestrator and the latency probe:
  download(stream)           one GET /transfer/download, read until the
                             body ends or stream.stop_requested
  upload(stream, payload)    one POST /transfer/upload of upload_size_mb,
                             body served from the shared payload block
  ping()                     one GET /transfer/ping
  info()                     GET /transfer/info

Every failure surfaces as TransportError.
"""

import threading
import time
import logging

import requests

from speedcheck_server.config import KIB, MIB
from speedcheck_server.errors import TransportError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0      # seconds
READ_TIMEOUT = 30.0         # seconds, per socket read

DOWNLOAD_READ_SIZE = 64 * KIB


def _cache_buster() -> int:
    return int(time.time() * 1000)


class PayloadReader:
    """
    File-like upload body of `total` bytes cycled from one read-only block.

    requests sees __len__ and sends a Content-Length; http.client then pulls
    the body through read(). Each read counts its bytes into the stream's
    counter, and the read that completes the body stamps the
    transmission-end time on the stream.
    """

    def __init__(self, block: bytes, total: int, stream) -> None:
        if not block:
            raise ValueError("payload block must not be empty")
        self._view   = memoryview(block)
        self._total  = total
        self._stream = stream
        self.sent    = 0

    def __len__(self) -> int:
        return self._total

    def read(self, size: int = -1) -> bytes:
        if self._stream.aborted:
            raise TransportError("upload aborted")
        remaining = self._total - self.sent
        if remaining <= 0:
            return b""
        if size is None or size < 0:
            size = remaining
        offset = self.sent % len(self._view)
        n = min(size, remaining, len(self._view) - offset)
        data = bytes(self._view[offset:offset + n])
        self.sent += n
        self._stream.counter.add(n)
        if self.sent >= self._total:
            self._stream.mark_transmitted()
        return data


class HttpTransport:
    """
    Usage:
        transport = HttpTransport("http://127.0.0.1:3000")
        transport.ping()
        ...
        transport.close()
    """

    def __init__(
        self,
        base_url: str,
        download_size_mb: int = 50,
        download_chunk_kb: int = 512,
        upload_size_mb: int = 10,
        connect_timeout: float = CONNECT_TIMEOUT,
        read_timeout: float = READ_TIMEOUT,
    ) -> None:
        self.base_url          = base_url.rstrip("/")
        self.download_size_mb  = download_size_mb
        self.download_chunk_kb = download_chunk_kb
        self.upload_size_mb    = upload_size_mb
        self.timeout           = (connect_timeout, read_timeout)

        self._local = threading.local()
        self._lock = threading.Lock()
        self._sessions: list = []

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
            with self._lock:
                self._sessions.append(session)
        return session

    def close(self) -> None:
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # ------------------------------------------------------------------
    # Transfer operations
    # ------------------------------------------------------------------

    def download(self, stream) -> int:
        """Read one download response into stream.counter. Returns bytes read."""
        params = {
            "size":  self.download_size_mb,
            "chunk": self.download_chunk_kb,
            "t":     _cache_buster(),
        }
        try:
            response = self._session().get(
                self._url("/transfer/download"),
                params=params,
                stream=True,
                timeout=self.timeout,
                headers={"Cache-Control": "no-store"},
            )
        except requests.RequestException as exc:
            raise TransportError(f"download request failed: {exc}") from exc

        stream.attach(response)
        received = 0
        try:
            if response.status_code != 200:
                raise TransportError(
                    f"download failed: {response.status_code} {response.reason}"
                )
            for data in response.iter_content(chunk_size=DOWNLOAD_READ_SIZE):
                stream.counter.add(len(data))
                received += len(data)
                if stream.stop_requested:
                    break
        except (requests.RequestException, OSError, ValueError) as exc:
            if stream.aborted:
                logger.debug("Stream %d: download read aborted", stream.stream_id)
                return received
            raise TransportError(f"download read failed: {exc}") from exc
        finally:
            stream.detach()
            response.close()
        return received

    def upload(self, stream, payload: bytes) -> int:
        """Send one upload body. Returns the byte count the server accepted."""
        body = PayloadReader(payload, self.upload_size_mb * MIB, stream)
        try:
            response = self._session().post(
                self._url("/transfer/upload"),
                params={"t": _cache_buster()},
                data=body,
                headers={"Content-Type": "application/octet-stream"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"upload request failed: {exc}") from exc

        with response:
            if response.status_code == 413:
                raise TransportError("upload rejected: payload too large")
            if response.status_code != 200:
                raise TransportError(
                    f"upload failed: {response.status_code} {response.reason}"
                )
            try:
                return int(response.json()["receivedBytes"])
            except (ValueError, KeyError, TypeError) as exc:
                raise TransportError(f"malformed upload response: {exc}") from exc

    # ------------------------------------------------------------------
    # Control requests
    # ------------------------------------------------------------------

    def ping(self) -> None:
        """One minimal round trip. The caller times it."""
        try:
            response = self._session().get(
                self._url("/transfer/ping"),
                params={"t": _cache_buster()},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransportError(f"ping failed: {exc}") from exc

    def info(self) -> dict:
        try:
            response = self._session().get(self._url("/transfer/info"), timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TransportError(f"info request failed: {exc}") from exc
