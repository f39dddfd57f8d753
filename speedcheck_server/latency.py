"""
speedcheck_server/latency.py

LatencyProbe — sequential round-trip sampler.

Issues `count` minimal requests one after another, `spacing` seconds
apart, and times each with a monotonic clock. Failed probes are dropped,
never recorded as zero. Jitter is the mean absolute difference between
consecutive successful samples, not a standard deviation.
"""

import threading
import time
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from speedcheck_server.errors import NoSamplesError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_PROBE_COUNT = 10
DEFAULT_SPACING = 0.1       # seconds between probes


def compute_jitter(samples: Sequence[float]) -> float:
    """Mean |s[i] - s[i-1]|; 0.0 for fewer than two samples."""
    if len(samples) < 2:
        return 0.0
    diffs = [abs(samples[i] - samples[i - 1]) for i in range(1, len(samples))]
    return sum(diffs) / len(diffs)


@dataclass(frozen=True)
class LatencyResult:
    average_ms: float
    min_ms: float
    max_ms: float
    jitter_ms: float
    samples: tuple
    failed: int = 0

    @classmethod
    def from_samples(cls, samples: Sequence[float], failed: int = 0) -> "LatencyResult":
        if not samples:
            raise NoSamplesError("No latency samples collected")
        return cls(
            average_ms=sum(samples) / len(samples),
            min_ms=min(samples),
            max_ms=max(samples),
            jitter_ms=compute_jitter(samples),
            samples=tuple(samples),
            failed=failed,
        )

    def to_dict(self) -> dict:
        return {
            "average_ms": round(self.average_ms, 2),
            "min_ms":     round(self.min_ms, 2),
            "max_ms":     round(self.max_ms, 2),
            "jitter_ms":  round(self.jitter_ms, 2),
            "samples":    len(self.samples),
            "failed":     self.failed,
        }


class LatencyProbe:
    """
    Args:
        probe:    Callable performing one round trip; raises on failure
                  (HttpTransport.ping)
        count:    Number of probes
        spacing:  Seconds between probes
        clock:    Monotonic clock in seconds
        on_sample: Optional callback(sample_ms, running_average_ms)
    """

    def __init__(
        self,
        probe: Callable[[], None],
        count: int = DEFAULT_PROBE_COUNT,
        spacing: float = DEFAULT_SPACING,
        clock: Callable[[], float] = time.perf_counter,
        on_sample: Optional[Callable[[float, float], None]] = None,
    ) -> None:
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        self._probe     = probe
        self.count      = count
        self.spacing    = spacing
        self._clock     = clock
        self._on_sample = on_sample
        self._cancel    = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    def measure(self) -> LatencyResult:
        """
        Run the probe sequence.

        Cancellation stops early and returns what was collected.
        Raises NoSamplesError if no probe succeeded.
        """
        self._cancel.clear()
        samples = []
        failed = 0

        for i in range(self.count):
            if self._cancel.is_set():
                logger.info("Latency measurement cancelled after %d probes", i)
                break

            start = self._clock()
            try:
                self._probe()
            except TransportError as exc:
                failed += 1
                logger.warning("Latency probe %d failed: %s", i, exc)
            else:
                sample_ms = (self._clock() - start) * 1000.0
                samples.append(sample_ms)
                if self._on_sample is not None:
                    self._on_sample(sample_ms, sum(samples) / len(samples))

            if i < self.count - 1 and self._cancel.wait(self.spacing):
                logger.info("Latency measurement cancelled after %d probes", i + 1)
                break

        result = LatencyResult.from_samples(samples, failed=failed)
        logger.info(
            "Latency: avg=%.2f ms jitter=%.2f ms (%d ok, %d failed)",
            result.average_ms, result.jitter_ms, len(samples), failed,
        )
        return result
