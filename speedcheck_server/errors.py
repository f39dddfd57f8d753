"""
speedcheck_server/errors.py

Exception taxonomy shared by the server and client layers.

  OverloadError     — inflight ceiling reached; retryable (HTTP 503)
  PayloadTooLarge   — upload ceiling exceeded; terminal for that request (HTTP 413)
  TransportError    — network failure inside one transfer thread; absorbed
                      into a partial result, never raised out of a phase
  PhaseCancelled    — user cancelled a phase; its partial result is discarded
  NoSamplesError    — a measurement produced nothing usable at all

Malformed query parameters have no exception: they are defaulted and
clamped where they are parsed.
"""


class SpeedCheckError(Exception):
    """Base class for every SpeedCheck error."""


class ConfigError(SpeedCheckError):
    """Configuration failed validation."""

    def __init__(self, errors: list) -> None:
        self.errors = list(errors)
        super().__init__(
            "Configuration validation failed:\n" + "\n".join(self.errors)
        )


class OverloadError(SpeedCheckError):
    def __init__(self, inflight: int, limit: int, retry_after: int = 30) -> None:
        self.inflight = inflight
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(
            f"Service temporarily overloaded ({inflight}/{limit} inflight)"
        )


class PayloadTooLarge(SpeedCheckError):
    def __init__(self, limit_bytes: int, received_bytes: int) -> None:
        self.limit_bytes = limit_bytes
        self.received_bytes = received_bytes
        super().__init__(
            f"Upload too large: {received_bytes} bytes exceeds limit of {limit_bytes}"
        )


class TransportError(SpeedCheckError):
    """A single transfer or probe request failed."""


class PhaseCancelled(SpeedCheckError):
    """The phase was cancelled; no measurement is returned."""


class NoSamplesError(SpeedCheckError):
    """Nothing usable was collected."""
