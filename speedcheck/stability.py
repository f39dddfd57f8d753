"""
speedcheck/stability.py

StabilityDetector — decides when a sequence of throughput samples has
converged so a transfer phase can stop early.

The measure is the mean squared deviation of each sample from the window
mean, relative to that mean:

    variance = mean( ((x - mean) / mean) ** 2 )

A window is stable when this relative variance drops below a threshold
(0.05 by default, i.e. samples within roughly ±22% of their mean).

Everything here is pure: no clocks, no I/O, no shared state. The
orchestrator owns the samples and asks this module for a verdict.

Usage:
    from speedcheck.stability import StabilityDetector

    detector = StabilityDetector()
    if detector.is_stable(samples_mbps):
        ...
"""

import logging
from dataclasses import dataclass
from typing import Sequence

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_COUNT = 5         # samples required before any verdict
DEFAULT_WINDOW = 10              # most recent samples examined
DEFAULT_VARIANCE_THRESHOLD = 0.05


@dataclass(frozen=True)
class StabilityConfig:
    sample_count: int = DEFAULT_SAMPLE_COUNT
    window: int = DEFAULT_WINDOW
    variance_threshold: float = DEFAULT_VARIANCE_THRESHOLD

    def __post_init__(self) -> None:
        if self.sample_count < 1:
            raise ValueError(f"sample_count must be >= 1, got {self.sample_count}")
        if self.window < 1:
            raise ValueError(f"window must be >= 1, got {self.window}")
        if self.variance_threshold <= 0:
            raise ValueError(
                f"variance_threshold must be > 0, got {self.variance_threshold}"
            )


def relative_variance(samples: Sequence[float]) -> float:
    """
    Mean squared relative deviation from the mean.

    Returns +inf when the mean is not positive (an all-zero or empty
    window has no meaningful relative spread).
    """
    if not samples:
        return float("inf")
    mean = sum(samples) / len(samples)
    if mean <= 0:
        return float("inf")
    return sum(((x - mean) / mean) ** 2 for x in samples) / len(samples)


def is_stable(
    samples: Sequence[float],
    sample_count: int = DEFAULT_SAMPLE_COUNT,
    window: int = DEFAULT_WINDOW,
    variance_threshold: float = DEFAULT_VARIANCE_THRESHOLD,
) -> bool:
    """
    True when the last min(len(samples), window) samples have a relative
    variance below variance_threshold. Always False with fewer than
    sample_count samples.
    """
    if len(samples) < sample_count:
        return False
    recent = list(samples[-min(len(samples), window):])
    variance = relative_variance(recent)
    stable = variance < variance_threshold
    if stable:
        logger.debug(
            "Stability detected: variance=%.4f threshold=%.4f window=%d",
            variance, variance_threshold, len(recent),
        )
    return stable


def stability_score(samples: Sequence[float]) -> float:
    """
    Diagnostic 0-100 score over the full sample set.

        score = clamp(0, 100, (1 - variance * 10) * 100)

    Fewer than two samples score 100; a non-positive mean scores 0.
    """
    if len(samples) < 2:
        return 100.0
    variance = relative_variance(samples)
    if variance == float("inf"):
        return 0.0
    return max(0.0, min(100.0, (1.0 - variance * 10.0) * 100.0))


class StabilityDetector:
    """
    StabilityDetector bound to one StabilityConfig.

    Public interface:
        is_stable(samples)        → bool
        stability_score(samples)  → float in [0, 100]
    """

    def __init__(self, config: StabilityConfig = None) -> None:
        self.config = config or StabilityConfig()

    def is_stable(self, samples: Sequence[float]) -> bool:
        return is_stable(
            samples,
            sample_count=self.config.sample_count,
            window=self.config.window,
            variance_threshold=self.config.variance_threshold,
        )

    def stability_score(self, samples: Sequence[float]) -> float:
        return stability_score(samples)

    @property
    def sample_count(self) -> int:
        return self.config.sample_count
