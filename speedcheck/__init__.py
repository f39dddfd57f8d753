"""
SpeedCheck — throughput convergence engine.

Public API:
    from speedcheck import StabilityDetector, is_stable, stability_score
"""
from speedcheck.stability import (
    StabilityConfig,
    StabilityDetector,
    is_stable,
    relative_variance,
    stability_score,
)

__version__ = "1.0.0"
__all__ = [
    "StabilityConfig",
    "StabilityDetector",
    "is_stable",
    "relative_variance",
    "stability_score",
]
