"""
speedcheck_server/server.py

SpeedCheck SERVER — the HTTP side of a speed test.

Routes:
  GET  /transfer/download?size=<MB>&chunk=<KB>   pseudorandom byte stream
  POST /transfer/upload                           raw octet-stream sink
  GET  /transfer/ping                             {timestamp, server}
  POST /transfer/ping-batch                       {count} → nonce list
  GET  /transfer/info                             server limits / version
  GET  /health                                    uptime + counters

Architecture:
  - One aiohttp application on one event loop.
  - Download and upload pass through the admission middleware, which holds
    an AdmissionController ticket for the lifetime of the request.
  - ByteStreamGenerator / UploadReceiver do the byte work; this module only
    adapts them to aiohttp requests and responses.
  - SpeedCheckServer wraps the app in a blocking start()/stop() lifecycle
    so the CLI and tests can run it on any thread.
"""

import asyncio
import os
import signal
import threading
import time
import logging
from typing import Optional

from aiohttp import web

from speedcheck_server import __version__
from speedcheck_server.admission import AdmissionController
from speedcheck_server.config import ServerConfig
from speedcheck_server.errors import OverloadError, PayloadTooLarge
from speedcheck_server.generator import ByteStreamGenerator
from speedcheck_server.metrics import ServerStats
from speedcheck_server.receiver import UploadReceiver

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma":        "no-cache",
    "Expires":       "0",
}

# Routes that hold an inflight slot
GATED_ROUTES = {"download", "upload"}

PING_BATCH_DEFAULT = 10
PING_BATCH_MAX = 100

SERVER_NAME = "SpeedCheck Speed Test Server"

CONFIG_KEY     = web.AppKey("config", ServerConfig)
STATS_KEY      = web.AppKey("stats", ServerStats)
ADMISSION_KEY  = web.AppKey("admission", AdmissionController)


def _now_ms() -> int:
    return int(time.time() * 1000)


class _ResponseSink:
    """Adapts an aiohttp StreamResponse to the ByteStreamGenerator sink."""

    def __init__(self, request: web.Request, response: web.StreamResponse) -> None:
        self._request  = request
        self._response = response

    async def write(self, data: bytes) -> None:
        # StreamResponse.write() buffers, then awaits drain once the
        # transport passes its high-water mark.
        await self._response.write(data)

    def is_closing(self) -> bool:
        transport = self._request.transport
        return transport is None or transport.is_closing()


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return web.json_response({"error": "Endpoint not found"}, status=404)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("Server error on %s %s", request.method, request.path)
        return web.json_response({"error": "Internal server error"}, status=500)


def admission_middleware(controller: AdmissionController):
    """Gate GATED_ROUTES on the inflight counter; release on every exit path."""

    @web.middleware
    async def middleware(request: web.Request, handler):
        route = request.match_info.route
        if route is None or route.name not in GATED_ROUTES:
            return await handler(request)

        try:
            ticket = controller.admit()
        except OverloadError as exc:
            return web.json_response(
                {"error": "Service temporarily overloaded", "retryAfter": exc.retry_after},
                status=503,
                headers={"Retry-After": str(exc.retry_after)},
            )

        # Response finished (task done) and handler exit (connection closed,
        # error, cancellation) both release; the ticket counts only once.
        task = request.task
        if task is not None:
            task.add_done_callback(lambda _t: ticket.release())
        try:
            return await handler(request)
        finally:
            ticket.release()

    return middleware


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

class TransferRoutes:
    """Request handlers bound to one set of server components."""

    def __init__(
        self,
        config: ServerConfig,
        generator: ByteStreamGenerator,
        receiver: UploadReceiver,
        stats: ServerStats,
    ) -> None:
        self._config    = config
        self._generator = generator
        self._receiver  = receiver
        self._stats     = stats

    def register(self, app: web.Application) -> None:
        app.router.add_get("/transfer/download", self.download, name="download")
        app.router.add_post("/transfer/upload", self.upload, name="upload")
        app.router.add_get("/transfer/ping", self.ping, name="ping")
        app.router.add_post("/transfer/ping-batch", self.ping_batch, name="ping-batch")
        app.router.add_get("/transfer/info", self.info, name="info")
        app.router.add_get("/health", self.health, name="health")

    async def download(self, request: web.Request) -> web.StreamResponse:
        plan = self._generator.plan(
            request.query.get("size"),
            request.query.get("chunk"),
        )
        response = web.StreamResponse(status=200, headers=NO_STORE_HEADERS)
        response.content_type = "application/octet-stream"
        response.content_length = plan.size_bytes
        await response.prepare(request)

        sent = await self._generator.stream(plan, _ResponseSink(request, response))
        if sent == plan.size_bytes:
            await response.write_eof()
        return response

    async def upload(self, request: web.Request) -> web.Response:
        try:
            result = await self._receiver.receive(request.content.iter_any())
        except PayloadTooLarge as exc:
            response = web.json_response(
                {"error": "Upload too large", "limitBytes": exc.limit_bytes},
                status=413,
                headers=NO_STORE_HEADERS,
            )
            # The rest of the body is never read; drop the connection.
            response.force_close()
            return response

        if result is None:
            response = web.json_response({"error": "Upload aborted"}, status=400)
            response.force_close()
            return response
        return web.json_response(result.to_json(), headers=NO_STORE_HEADERS)

    async def ping(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"timestamp": _now_ms(), "server": "ok"},
            headers=NO_STORE_HEADERS,
        )

    async def ping_batch(self, request: web.Request) -> web.Response:
        count = PING_BATCH_DEFAULT
        if request.can_read_body:
            try:
                body = await request.json()
                count = int(body.get("count", PING_BATCH_DEFAULT))
            except (ValueError, TypeError, AttributeError):
                count = PING_BATCH_DEFAULT
        count = max(1, min(PING_BATCH_MAX, count))

        measurements = [
            {"id": i, "timestamp": _now_ms(), "nonce": os.urandom(8).hex()}
            for i in range(count)
        ]
        return web.json_response(
            {"measurements": measurements, "serverTime": _now_ms(), "count": count},
            headers=NO_STORE_HEADERS,
        )

    async def info(self, request: web.Request) -> web.Response:
        return web.json_response({
            "name":            SERVER_NAME,
            "location":        self._config.server_location,
            "maxDownloadSize": self._config.max_download_size_mb,
            "maxUploadSize":   self._config.max_upload_size_mb,
            "version":         __version__,
            "supportedTests":  ["latency", "download", "upload"],
        })

    async def health(self, request: web.Request) -> web.Response:
        payload = {"status": "healthy", "timestamp": _now_ms()}
        payload.update(self._stats.snapshot())
        return web.json_response(payload)


def create_app(
    config: Optional[ServerConfig] = None,
    controller: Optional[AdmissionController] = None,
    stats: Optional[ServerStats] = None,
) -> web.Application:
    """Build the aiohttp application. Components may be injected for tests."""
    config = config or ServerConfig()
    stats = stats or ServerStats()
    controller = controller or AdmissionController(
        max_inflight=config.max_inflight_requests,
        retry_after=config.retry_after_s,
        stats=stats,
    )
    generator = ByteStreamGenerator(
        max_size_mb=config.max_download_size_mb,
        default_size_mb=config.default_download_size_mb,
        default_chunk_kb=config.default_chunk_kb,
        chunk_bounds_kb=config.chunk_size_bounds_kb,
        stats=stats,
    )
    receiver = UploadReceiver(limit_bytes=config.upload_limit_bytes, stats=stats)

    app = web.Application(middlewares=[error_middleware, admission_middleware(controller)])
    app[CONFIG_KEY] = config
    app[STATS_KEY] = stats
    app[ADMISSION_KEY] = controller
    TransferRoutes(config, generator, receiver, stats).register(app)
    return app


# ---------------------------------------------------------------------------
# SpeedCheckServer — lifecycle wrapper
# ---------------------------------------------------------------------------

class SpeedCheckServer:
    """
    Usage:
        server = SpeedCheckServer(ServerConfig(port=3000))
        server.start()          # blocks until stop() or SIGINT/SIGTERM
    """

    def __init__(self, config: Optional[ServerConfig] = None) -> None:
        self.config = config or ServerConfig()
        self.host   = self.config.host
        self.port   = self.config.port
        self.stats  = ServerStats()
        self.app    = create_app(self.config, stats=self.stats)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._runner: Optional[web.AppRunner] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, ready_event: Optional[threading.Event] = None) -> None:
        """
        Start serving. Blocks until stop() is called or a signal arrives.

        Args:
            ready_event: If provided, set() once the socket is bound and
                         listening. self.port then holds the bound port
                         (useful with port=0).
        """
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._runner = web.AppRunner(self.app)
        try:
            self._loop.run_until_complete(self._runner.setup())
            site = web.TCPSite(self._runner, self.host, self.port)
            self._loop.run_until_complete(site.start())
            self.port = self._runner.addresses[0][1]

            # Install signal handlers only when running on the main thread
            if threading.current_thread() is threading.main_thread():
                for signum in (signal.SIGINT, signal.SIGTERM):
                    try:
                        self._loop.add_signal_handler(signum, self._on_signal)
                    except NotImplementedError:
                        pass

            print(f"\n  SpeedCheck Server listening on {self.host}:{self.port}")
            print(f"  Location          : {self.config.server_location}")
            print(f"  Max download size : {self.config.max_download_size_mb} MB")
            print(f"  Max upload size   : {self.config.max_upload_size_mb} MB")
            print(f"  Press Ctrl-C to stop\n")
            logger.info("Server started on %s:%d", self.host, self.port)

            if ready_event is not None:
                ready_event.set()

            self._loop.run_forever()
        finally:
            self._loop.run_until_complete(self._runner.cleanup())
            self._loop.close()
            logger.info("Server stopped")

    def stop(self) -> None:
        """Thread-safe shutdown request."""
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._loop.stop)

    @property
    def base_url(self) -> str:
        host = "127.0.0.1" if self.host in ("0.0.0.0", "") else self.host
        return f"http://{host}:{self.port}"

    def _on_signal(self) -> None:
        print("\n  Shutting down server...")
        self._loop.stop()
