"""
speedcheck_server/client.py

SpeedCheck CLIENT — runs a complete speed test against a server.

This is the active side:
  1. Creates an HttpTransport for the server
  2. LatencyProbe: sequential pings → average latency and jitter
  3. TransferOrchestrator: download phase, then upload phase
  4. Prints a live progress bar and a final summary

The phases run on a worker thread so the calling thread stays free to
turn Ctrl-C into a clean cancel.

No socket code here — that lives in transport.py.
No stability logic here — that lives in speedcheck.stability.
"""

import sys
import threading
import time
import logging
from dataclasses import dataclass
from typing import Optional

from speedcheck_server.config import ClientConfig
from speedcheck_server.errors import NoSamplesError, PhaseCancelled, SpeedCheckError
from speedcheck_server.latency import LatencyProbe, LatencyResult
from speedcheck_server.transfer import Direction, PhaseResult, TransferOrchestrator
from speedcheck_server.transport import HttpTransport

logger = logging.getLogger(__name__)

PROGRESS_BAR_LEN = 36


@dataclass
class SpeedTestReport:
    latency: Optional[LatencyResult] = None
    download: Optional[PhaseResult] = None
    upload: Optional[PhaseResult] = None

    def to_dict(self) -> dict:
        return {
            "latency":  self.latency.to_dict() if self.latency else None,
            "download": self.download.to_dict() if self.download else None,
            "upload":   self.upload.to_dict() if self.upload else None,
        }


class SpeedCheckClient:
    """
    Orchestrates latency → download → upload against one server.

    Args:
        config:    ClientConfig (server URL, threads, durations, stability)
        transport: Optional transport override (tests); defaults to HttpTransport
        show_progress: Render the live progress bar on stdout
    """

    def __init__(
        self,
        config: ClientConfig,
        transport=None,
        show_progress: bool = True,
    ) -> None:
        self.config = config
        self._owns_transport = transport is None
        self._transport = transport or HttpTransport(
            config.base_url,
            download_size_mb=config.download_size_mb,
            download_chunk_kb=config.download_chunk_kb,
            upload_size_mb=config.upload_size_mb,
            read_timeout=max(config.download_max_s, config.upload_max_s) + config.grace_s,
        )
        self._show_progress = show_progress

        self._probe = LatencyProbe(
            probe=self._transport.ping,
            count=config.ping_count,
            spacing=config.ping_spacing_s,
        )
        self._orchestrator = TransferOrchestrator(
            transport=self._transport,
            stability=config.stability,
            tick_s=config.tick_s,
            sample_interval_s=config.sample_interval_s,
            grace_s=config.grace_s,
            on_progress=self._on_progress if show_progress else None,
        )

        self._cancelled = threading.Event()
        self._error: Optional[BaseException] = None
        self._report = SpeedTestReport()
        self._last_draw = 0.0

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def run(self) -> Optional[SpeedTestReport]:
        """
        Run all phases and block until done.

        Returns:
            The report, or None if the run was cancelled or failed.
        """
        self._echo(f"\n  SpeedCheck Client")
        self._echo(f"  Server   : {self.config.base_url}")
        self._echo(f"  Threads  : {self.config.download_threads} down / {self.config.upload_threads} up\n")

        worker = threading.Thread(target=self._run_phases, name="speedcheck-run", daemon=True)
        worker.start()
        try:
            while worker.is_alive():
                worker.join(timeout=0.2)
        except KeyboardInterrupt:
            self._echo("\n  Cancelling test...")
            self.cancel()
            worker.join()
        finally:
            if self._owns_transport:
                self._transport.close()

        if self._cancelled.is_set():
            self._echo("  Test cancelled\n")
            return None
        if self._error is not None:
            print(f"\n  Test failed: {self._error}\n", file=sys.stderr)
            return None

        if self._show_progress:
            self._print_summary(self._report)
        return self._report

    def cancel(self) -> None:
        """Cancel whatever phase is active. Safe to call repeatedly."""
        self._cancelled.set()
        self._probe.cancel()
        self._orchestrator.cancel()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run_phases(self) -> None:
        try:
            self._echo("  Measuring latency...")
            self._report.latency = self._probe.measure()
            if self._cancelled.is_set():
                return

            for direction in (Direction.DOWNLOAD, Direction.UPLOAD):
                if self._cancelled.is_set():
                    return
                lo_ms, hi_ms = self.config.durations(direction.value)
                result = self._orchestrator.run_phase(
                    direction, self.config.threads(direction.value), lo_ms, hi_ms,
                )
                if self._show_progress:
                    print()  # newline after progress bar
                setattr(self._report, direction.value, result)
        except PhaseCancelled:
            logger.info("Phase cancelled")
        except NoSamplesError as exc:
            if not self._cancelled.is_set():
                self._error = exc
        except SpeedCheckError as exc:
            logger.error("Speed test failed: %s", exc)
            self._error = exc
        except Exception as exc:
            logger.error("Speed test error: %s", exc, exc_info=True)
            self._error = exc

    def _echo(self, message: str) -> None:
        if self._show_progress:
            print(message)

    def _on_progress(self, direction: str, mbps: float, elapsed_s: float) -> None:
        now = time.monotonic()
        if now - self._last_draw < 0.25:
            return
        self._last_draw = now
        _lo, hi_ms = self.config.durations(direction)
        pct = min(1.0, elapsed_s * 1000.0 / hi_ms) if hi_ms else 1.0
        filled = int(PROGRESS_BAR_LEN * pct)
        bar = "█" * filled + "░" * (PROGRESS_BAR_LEN - filled)
        print(
            f"\r  {direction:<8} [{bar}] {mbps:8.2f} Mbps  {elapsed_s:5.1f}s  ",
            end="",
            flush=True,
        )

    def _print_summary(self, report: SpeedTestReport) -> None:
        print(f"\n  {'─'*56}")
        print(f"  Speed Test Summary")
        print(f"  {'─'*56}")
        if report.latency:
            lat = report.latency
            print(f"  Latency         : {lat.average_ms:.1f} ms  "
                  f"(min {lat.min_ms:.1f} / max {lat.max_ms:.1f})")
            print(f"  Jitter          : {lat.jitter_ms:.1f} ms")
            if lat.failed:
                print(f"  Failed probes   : {lat.failed}")
        for label, result in (("Download", report.download), ("Upload", report.upload)):
            if result is None:
                continue
            print(f"  {label:<16}: {result.speed_mbps:.2f} Mbps  "
                  f"({result.bytes_transferred / 1e6:.1f} MB in {result.duration_s:.2f} s)")
            print(f"  {'':<16}  stop: {result.stop_reason.value}  "
                  f"stability: {result.stability:.0f}/100")
        print(f"  {'─'*56}\n")
