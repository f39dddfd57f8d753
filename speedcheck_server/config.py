"""
speedcheck_server/config.py

Configuration for both sides of a speed test.

ServerConfig values come from keyword arguments, or from the environment
via ServerConfig.from_env(); argparse flags in cli.py override either.
ClientConfig is built by the CLI from its flags.

Both validate eagerly and report every failed check at once.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from speedcheck.stability import StabilityConfig
from speedcheck_server.errors import ConfigError

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
KIB = 1024

DEFAULT_PORT = 3000
DEFAULT_MAX_DOWNLOAD_MB = 50
DEFAULT_MAX_UPLOAD_MB = 50
DEFAULT_MAX_INFLIGHT = 100
DEFAULT_DOWNLOAD_SIZE_MB = 5
DEFAULT_CHUNK_KB = 64
CHUNK_SIZE_BOUNDS_KB = (16, 1024)
RETRY_AFTER_S = 30

MIN_THREADS = 1
MAX_THREADS = 8

_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


def _env_int(env: dict, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError([f"Invalid {name}: {raw!r}. Must be an integer."])


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    max_download_size_mb: int = DEFAULT_MAX_DOWNLOAD_MB
    max_upload_size_mb: int = DEFAULT_MAX_UPLOAD_MB
    max_inflight_requests: int = DEFAULT_MAX_INFLIGHT
    default_download_size_mb: int = DEFAULT_DOWNLOAD_SIZE_MB
    default_chunk_kb: int = DEFAULT_CHUNK_KB
    chunk_size_bounds_kb: tuple = CHUNK_SIZE_BOUNDS_KB
    retry_after_s: int = RETRY_AFTER_S
    server_location: str = "Local"
    log_level: str = "info"

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **overrides) -> "ServerConfig":
        """Build from environment variables; keyword overrides win."""
        env = os.environ if environ is None else environ
        values = {
            "host":                  env.get("SPEEDCHECK_HOST", "0.0.0.0"),
            "port":                  _env_int(env, "PORT", DEFAULT_PORT),
            "max_download_size_mb":  _env_int(env, "MAX_DOWNLOAD_SIZE_MB", DEFAULT_MAX_DOWNLOAD_MB),
            "max_upload_size_mb":    _env_int(env, "MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_MB),
            "max_inflight_requests": _env_int(env, "MAX_INFLIGHT_REQUESTS", DEFAULT_MAX_INFLIGHT),
            "server_location":       env.get("SERVER_LOCATION", "Local"),
            "log_level":             env.get("LOG_LEVEL", "info"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def validate(self) -> None:
        errors = []
        if not 0 <= self.port <= 65535:
            errors.append(f"Invalid PORT: {self.port}. Must be between 0 and 65535.")
        if not 1 <= self.max_download_size_mb <= 1000:
            errors.append(
                f"Invalid MAX_DOWNLOAD_SIZE_MB: {self.max_download_size_mb}. "
                "Must be between 1 and 1000."
            )
        if not 1 <= self.max_upload_size_mb <= 1000:
            errors.append(
                f"Invalid MAX_UPLOAD_SIZE_MB: {self.max_upload_size_mb}. "
                "Must be between 1 and 1000."
            )
        if self.max_inflight_requests < 1:
            errors.append(
                f"Invalid MAX_INFLIGHT_REQUESTS: {self.max_inflight_requests}. "
                "Must be at least 1."
            )
        lo, hi = self.chunk_size_bounds_kb
        if lo < 1 or lo > hi:
            errors.append(f"Invalid chunk size bounds: {self.chunk_size_bounds_kb}")
        elif not lo <= self.default_chunk_kb <= hi:
            errors.append(
                f"Default chunk {self.default_chunk_kb} KB outside bounds {lo}..{hi}"
            )
        if self.log_level.lower() not in _LOG_LEVELS:
            errors.append(f"Invalid LOG_LEVEL: {self.log_level!r}")
        if errors:
            raise ConfigError(errors)

    @property
    def upload_limit_bytes(self) -> int:
        return self.max_upload_size_mb * MIB


@dataclass
class ClientConfig:
    base_url: str = f"http://127.0.0.1:{DEFAULT_PORT}"

    download_threads: int = 4
    upload_threads: int = 4

    download_min_s: float = 3.5
    download_max_s: float = 8.0
    upload_min_s: float = 3.0
    upload_max_s: float = 6.0

    download_size_mb: int = 50      # per request
    download_chunk_kb: int = 512
    upload_size_mb: int = 10        # per request

    ping_count: int = 10
    ping_spacing_s: float = 0.1

    grace_s: float = 5.0            # added to max duration for network deadlines
    tick_s: float = 0.1             # monitor / live display interval
    sample_interval_s: float = 0.5  # throughput sample interval

    stability: StabilityConfig = field(default_factory=StabilityConfig)

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        self.validate()

    def validate(self) -> None:
        errors = []
        for name in ("download_threads", "upload_threads"):
            value = getattr(self, name)
            if not MIN_THREADS <= value <= MAX_THREADS:
                errors.append(
                    f"Invalid {name}: {value}. Must be between {MIN_THREADS} and {MAX_THREADS}."
                )
        for direction in ("download", "upload"):
            lo = getattr(self, f"{direction}_min_s")
            hi = getattr(self, f"{direction}_max_s")
            if lo < 0 or hi <= 0 or lo > hi:
                errors.append(
                    f"Invalid {direction} duration: min={lo} max={hi}. Need 0 <= min <= max."
                )
        for name in ("download_size_mb", "upload_size_mb", "download_chunk_kb", "ping_count"):
            if getattr(self, name) < 1:
                errors.append(f"Invalid {name}: {getattr(self, name)}. Must be at least 1.")
        for name in ("tick_s", "sample_interval_s"):
            if getattr(self, name) <= 0:
                errors.append(f"Invalid {name}: {getattr(self, name)}. Must be positive.")
        if self.ping_spacing_s < 0 or self.grace_s < 0:
            errors.append("ping_spacing_s and grace_s must not be negative.")
        if errors:
            raise ConfigError(errors)

    def durations(self, direction: str) -> tuple:
        """(min_ms, max_ms) for 'download' or 'upload'."""
        lo = getattr(self, f"{direction}_min_s")
        hi = getattr(self, f"{direction}_max_s")
        return lo * 1000.0, hi * 1000.0

    def threads(self, direction: str) -> int:
        return getattr(self, f"{direction}_threads")
