"""
speedcheck_server/transfer.py

TransferOrchestrator — runs one download or upload phase over N parallel
transfer threads and decides when the measurement is done.

Responsibilities:
  - Spawn one TransferStream thread per connection; each owns a private
    ByteCounter and is its only writer
  - Monitor on a fixed tick: sum the counters, publish a smoothed live
    throughput, take an interval sample every sample_interval_s
  - Drop zero-progress intervals instead of recording them as zero
  - Stop early once the StabilityDetector reports convergence, or at the
    maximum duration regardless
  - Wait for every thread to finish (force-abort past the deadline) and
    compute the final figure from per-thread terminal values

State machine:
    IDLE → PREPARING → RUNNING → {STABILIZED | MAX_DURATION_REACHED |
                                  CANCELLED | ERROR} → IDLE

No HTTP code lives here; the transport object does the network work.
"""

import os
import threading
import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from speedcheck.stability import StabilityConfig, StabilityDetector
from speedcheck_server.config import KIB
from speedcheck_server.errors import NoSamplesError, PhaseCancelled, TransportError

logger = logging.getLogger(__name__)

TICK_INTERVAL = 0.1          # seconds between monitor ticks
SAMPLE_INTERVAL = 0.5        # seconds between throughput samples
DEADLINE_GRACE = 5.0         # seconds added to max duration for network deadlines
ABORT_JOIN_TIMEOUT = 1.0     # seconds to wait for a force-aborted thread
SMOOTHING_SAMPLES = 3        # live display: mean of the last N samples

PAYLOAD_BLOCK_SIZE = 64 * KIB


def make_payload_block(size: int = PAYLOAD_BLOCK_SIZE) -> bytes:
    """Random upload block; bytes are immutable so threads can share it."""
    return os.urandom(size)


class Direction(str, Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"


class StopReason(Enum):
    RUNNING = "running"
    STABILIZED = "stabilized"
    MAX_DURATION_REACHED = "max_duration_reached"
    CANCELLED = "cancelled"
    ERROR = "error"


class OrchestratorState(Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    RUNNING = "running"
    STABILIZED = "stabilized"
    MAX_DURATION_REACHED = "max_duration_reached"
    CANCELLED = "cancelled"
    ERROR = "error"


class ByteCounter:
    """Written by exactly one transfer thread, summed by the monitor."""

    __slots__ = ("bytes",)

    def __init__(self) -> None:
        self.bytes = 0

    def add(self, n: int) -> None:
        self.bytes += n


@dataclass(frozen=True)
class SpeedSample:
    elapsed_ms: float
    mbps: float


@dataclass(frozen=True)
class ThreadResult:
    stream_id: int
    bytes: int
    completed_at: float          # time.monotonic()
    error: Optional[str] = None


@dataclass
class TransferSession:
    """Per-phase state. speed_samples is append-only and time-ordered."""

    direction: Direction
    thread_count: int
    started_at: float
    counters: list = field(default_factory=list)
    speed_samples: list = field(default_factory=list)
    stop_reason: StopReason = StopReason.RUNNING
    live_mbps: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def total_bytes(self) -> int:
        # Unlocked snapshot; slight staleness is fine for the live figure.
        return sum(c.bytes for c in self.counters)

    def add_sample(self, elapsed_ms: float, mbps: float) -> None:
        self.speed_samples.append(SpeedSample(elapsed_ms, mbps))

    def sample_values(self) -> list:
        return [s.mbps for s in self.speed_samples]

    def finish(self, reason: StopReason) -> bool:
        """RUNNING → reason. Only the first transition counts."""
        if reason is StopReason.RUNNING:
            raise ValueError("cannot transition back to RUNNING")
        with self._lock:
            if self.stop_reason is not StopReason.RUNNING:
                return False
            self.stop_reason = reason
            return True

    @property
    def is_running(self) -> bool:
        return self.stop_reason is StopReason.RUNNING


@dataclass(frozen=True)
class PhaseResult:
    direction: Direction
    speed_mbps: float
    bytes_transferred: int
    duration_s: float
    stop_reason: StopReason
    stability: float
    samples: tuple
    thread_results: tuple

    def to_dict(self) -> dict:
        return {
            "direction":         self.direction.value,
            "speed_mbps":        round(self.speed_mbps, 2),
            "bytes_transferred": self.bytes_transferred,
            "duration_s":        round(self.duration_s, 3),
            "stop_reason":       self.stop_reason.value,
            "stability":         round(self.stability, 1),
            "sample_count":      len(self.samples),
        }


class TransferStream:
    """
    One transfer thread.

    Downloads: repeated GETs, each read loop ends as soon as stop is
    requested. Uploads: repeated POSTs; a body already on the wire is
    allowed to finish unless the phase is cancelled or the deadline passes.

    Lifecycle:
        stream = TransferStream(...)
        stream.start()
        ...
        stream.join(timeout)
        stream.abort()          # cancel / force-abort; closes the transport
        stream.result           # always a ThreadResult once started
    """

    def __init__(
        self,
        stream_id: int,
        direction: Direction,
        transport,
        stop_event: threading.Event,
        cancel_event: threading.Event,
        deadline: float,
        payload: Optional[bytes] = None,
    ) -> None:
        self.stream_id  = stream_id
        self.direction  = direction
        self.counter    = ByteCounter()
        self._transport = transport
        self._stop      = stop_event
        self._cancel    = cancel_event
        self._deadline  = deadline
        self._payload   = payload

        self._force_abort = threading.Event()
        self._handle = None
        self._handle_lock = threading.Lock()
        self._transmitted_at: Optional[float] = None
        self._bytes_at_transmit = 0
        self._result: Optional[ThreadResult] = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Signals read by the transport
    # ------------------------------------------------------------------

    @property
    def aborted(self) -> bool:
        return (
            self._cancel.is_set()
            or self._force_abort.is_set()
            or time.monotonic() >= self._deadline
        )

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set() or self.aborted

    def attach(self, handle) -> None:
        """Register the in-flight response so abort() can close it."""
        with self._handle_lock:
            self._handle = handle
        if self.aborted:
            self._close_handle()

    def detach(self) -> None:
        with self._handle_lock:
            self._handle = None

    def mark_transmitted(self) -> None:
        self._transmitted_at = time.monotonic()
        self._bytes_at_transmit = self.counter.bytes

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name=f"{self.direction.value}-{self.stream_id}",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Stream %d: %s started", self.stream_id, self.direction.value)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def abort(self) -> None:
        self._force_abort.set()
        self._close_handle()

    @property
    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def result(self) -> ThreadResult:
        if self._result is not None:
            return self._result
        # Still running after abort: report what it has so far.
        return ThreadResult(
            stream_id=self.stream_id,
            bytes=self.counter.bytes,
            completed_at=time.monotonic(),
            error="force-aborted",
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _close_handle(self) -> None:
        with self._handle_lock:
            handle = self._handle
        if handle is not None:
            try:
                handle.close()
            except Exception as exc:
                logger.debug("Stream %d: close during abort: %s", self.stream_id, exc)

    def _run(self) -> None:
        error = None
        try:
            while not self.stop_requested:
                if self.direction is Direction.DOWNLOAD:
                    self._transport.download(self)
                else:
                    self._transport.upload(self, self._payload)
        except TransportError as exc:
            if self.aborted:
                logger.debug("Stream %d: aborted (%s)", self.stream_id, exc)
            else:
                error = str(exc)
                logger.warning("Stream %d: %s", self.stream_id, exc)
        except Exception as exc:
            error = str(exc)
            logger.error("Stream %d error: %s", self.stream_id, exc, exc_info=True)
        finally:
            self._result = ThreadResult(
                stream_id=self.stream_id,
                bytes=self.counter.bytes,
                completed_at=self._completion_time(),
                error=error,
            )
            logger.debug(
                "Stream %d: finished with %d bytes", self.stream_id, self.counter.bytes,
            )

    def _completion_time(self) -> float:
        # Uploads end when the last body byte left, not when the reply came.
        if (
            self._transmitted_at is not None
            and self.counter.bytes == self._bytes_at_transmit
        ):
            return self._transmitted_at
        return time.monotonic()


class TransferOrchestrator:
    """
    Usage:
        orchestrator = TransferOrchestrator(transport)
        result = orchestrator.run_phase("download", 4, 3500, 8000)

    cancel() may be called from any thread while a phase runs; run_phase
    then raises PhaseCancelled.
    """

    def __init__(
        self,
        transport,
        stability: Optional[StabilityConfig] = None,
        tick_s: float = TICK_INTERVAL,
        sample_interval_s: float = SAMPLE_INTERVAL,
        grace_s: float = DEADLINE_GRACE,
        on_progress: Optional[Callable[[str, float, float], None]] = None,
        payload_block: Optional[bytes] = None,
    ) -> None:
        self._transport        = transport
        self._detector         = StabilityDetector(stability)
        self.tick_s            = tick_s
        self.sample_interval_s = sample_interval_s
        self.grace_s           = grace_s
        self._on_progress      = on_progress
        self._payload          = payload_block or make_payload_block()

        self._lock = threading.Lock()
        self._state = OrchestratorState.IDLE
        self._session: Optional[TransferSession] = None
        self._streams: list = []
        self._cancel_event: Optional[threading.Event] = None

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        with self._lock:
            if self._state is OrchestratorState.RUNNING and self._session is not None:
                reason = self._session.stop_reason
                if reason is not StopReason.RUNNING:
                    return OrchestratorState(reason.value)
            return self._state

    @property
    def session(self) -> Optional[TransferSession]:
        return self._session

    def cancel(self) -> None:
        """Abort the active phase. Idempotent; a no-op when idle."""
        with self._lock:
            if self._state is OrchestratorState.IDLE:
                return
            cancel_event = self._cancel_event
            session = self._session
            streams = list(self._streams)

        if cancel_event.is_set():
            return
        logger.info("Cancelling phase")
        cancel_event.set()
        if session is not None:
            session.finish(StopReason.CANCELLED)
        for stream in streams:
            stream.abort()

    def run_phase(
        self,
        direction,
        thread_count: int,
        min_duration_ms: float,
        max_duration_ms: float,
    ) -> PhaseResult:
        """
        Run one phase to completion and return its measurement.

        Raises:
            PhaseCancelled:  cancel() was called during the phase
            NoSamplesError:  no thread transferred a single byte
        """
        direction = Direction(direction)
        if thread_count < 1:
            raise ValueError(f"thread_count must be >= 1, got {thread_count}")

        with self._lock:
            if self._state is not OrchestratorState.IDLE:
                raise RuntimeError("a phase is already running")
            self._state = OrchestratorState.PREPARING
            self._cancel_event = threading.Event()
        cancel_event = self._cancel_event

        try:
            return self._run(direction, thread_count, min_duration_ms, max_duration_ms, cancel_event)
        finally:
            with self._lock:
                self._state = OrchestratorState.IDLE
                self._streams = []
                self._session = None

    # ------------------------------------------------------------------
    # Internal: phase
    # ------------------------------------------------------------------

    def _run(
        self,
        direction: Direction,
        thread_count: int,
        min_duration_ms: float,
        max_duration_ms: float,
        cancel_event: threading.Event,
    ) -> PhaseResult:
        stop_event = threading.Event()
        started = time.monotonic()
        deadline = started + max_duration_ms / 1000.0 + self.grace_s

        session = TransferSession(direction=direction, thread_count=thread_count, started_at=started)
        streams = [
            TransferStream(
                stream_id=i,
                direction=direction,
                transport=self._transport,
                stop_event=stop_event,
                cancel_event=cancel_event,
                deadline=deadline,
                payload=self._payload,
            )
            for i in range(thread_count)
        ]
        session.counters = [s.counter for s in streams]

        with self._lock:
            self._session = session
            self._streams = streams
            self._state = OrchestratorState.RUNNING

        if cancel_event.is_set():
            session.finish(StopReason.CANCELLED)
            raise PhaseCancelled(f"{direction.value} phase cancelled")

        logger.info(
            "%s phase: %d threads, min=%.0f ms max=%.0f ms",
            direction.value.capitalize(), thread_count, min_duration_ms, max_duration_ms,
        )
        for stream in streams:
            stream.start()

        self._monitor_loop(session, streams, stop_event, cancel_event,
                           min_duration_ms, max_duration_ms, deadline)

        if cancel_event.is_set():
            self._drain(streams, min(deadline, time.monotonic() + self.grace_s))
            session.finish(StopReason.CANCELLED)
            raise PhaseCancelled(f"{direction.value} phase cancelled")

        self._drain(streams, deadline)
        if cancel_event.is_set():
            raise PhaseCancelled(f"{direction.value} phase cancelled")
        return self._build_result(session, streams)

    def _monitor_loop(
        self,
        session: TransferSession,
        streams: list,
        stop_event: threading.Event,
        cancel_event: threading.Event,
        min_duration_ms: float,
        max_duration_ms: float,
        deadline: float,
    ) -> None:
        """Tick until stabilized, all threads finished, deadline, or cancel."""
        last_sample_s = 0.0
        last_bytes = 0

        while not cancel_event.wait(self.tick_s):
            now = time.monotonic()
            elapsed_s = now - session.started_at
            elapsed_ms = elapsed_s * 1000.0
            total = session.total_bytes()

            self._publish_live(session, total, elapsed_s)

            if elapsed_s - last_sample_s >= self.sample_interval_s:
                gained = total - last_bytes
                interval_s = elapsed_s - last_sample_s
                if gained > 0:
                    session.add_sample(elapsed_ms, (gained * 8) / interval_s / 1e6)
                else:
                    logger.debug("No progress in last %.2fs", interval_s)
                last_sample_s = elapsed_s
                last_bytes = total

                if (
                    session.is_running
                    and elapsed_ms >= min_duration_ms
                    and self._detector.is_stable(session.sample_values())
                ):
                    if session.finish(StopReason.STABILIZED):
                        logger.info(
                            "%s speed stabilized after %.2fs, stopping early",
                            session.direction.value.capitalize(), elapsed_s,
                        )
                        stop_event.set()
                    return

            if session.is_running and elapsed_ms >= max_duration_ms:
                if session.finish(StopReason.MAX_DURATION_REACHED):
                    logger.info(
                        "%s max duration reached, finishing in-flight transfers",
                        session.direction.value.capitalize(),
                    )
                    stop_event.set()

            if not any(s.is_alive for s in streams):
                if session.finish(StopReason.ERROR):
                    logger.warning(
                        "All %s threads ended before the phase completed",
                        session.direction.value,
                    )
                return

            if now >= deadline:
                return

    def _publish_live(self, session: TransferSession, total: int, elapsed_s: float) -> None:
        if elapsed_s <= 0 or total <= 0:
            return
        samples = session.sample_values()
        if len(samples) >= SMOOTHING_SAMPLES:
            recent = samples[-SMOOTHING_SAMPLES:]
            live = sum(recent) / len(recent)
        else:
            live = (total * 8) / elapsed_s / 1e6
        session.live_mbps = live
        if self._on_progress is not None:
            try:
                self._on_progress(session.direction.value, live, elapsed_s)
            except Exception as exc:
                logger.debug("Progress callback failed: %s", exc)

    def _drain(self, streams: list, deadline: float) -> None:
        """Wait for every thread; force-abort the ones still running at deadline."""
        for stream in streams:
            stream.join(timeout=max(0.0, deadline - time.monotonic()))
        stuck = [s for s in streams if s.is_alive]
        for stream in stuck:
            logger.warning("Stream %d: deadline exceeded, force-aborting", stream.stream_id)
            stream.abort()
        for stream in stuck:
            stream.join(timeout=ABORT_JOIN_TIMEOUT)

    def _build_result(self, session: TransferSession, streams: list) -> PhaseResult:
        results = tuple(s.result for s in streams)
        total = sum(r.bytes for r in results)
        if total == 0:
            session.finish(StopReason.ERROR)
            raise NoSamplesError(f"No bytes transferred in {session.direction.value} phase")

        # Draining threads may finish after the monitor stopped; the latest
        # thread completion, not the last tick, closes the measurement.
        finished_at = max(r.completed_at for r in results)
        duration_s = finished_at - session.started_at
        speed = (total * 8) / duration_s / 1e6 if duration_s > 0 else 0.0

        samples = session.sample_values()
        logger.info(
            "%s completed: %.2f Mbps (%d bytes in %.2fs, %s)",
            session.direction.value.capitalize(), speed, total, duration_s,
            session.stop_reason.value,
        )
        return PhaseResult(
            direction=session.direction,
            speed_mbps=speed,
            bytes_transferred=total,
            duration_s=duration_s,
            stop_reason=session.stop_reason,
            stability=self._detector.stability_score(samples),
            samples=tuple(session.speed_samples),
            thread_results=results,
        )
