"""
speedcheck_server/admission.py

AdmissionController — process-wide inflight-request gate for transfer
endpoints.

A request is admitted only while fewer than max_inflight requests are in
progress; otherwise OverloadError is raised carrying a retry hint. An
admitted request holds a Ticket. Every completion path (response
finished, connection closed, handler error) calls Ticket.release(), and
the ticket decrements the counter exactly once however many of those
paths fire.

This is a plain threshold gate. There is no half-open state and no
backoff: the gate opens again as soon as the counter drops.
"""

import threading
import logging
from typing import Optional

from speedcheck_server.errors import OverloadError
from speedcheck_server.metrics import ServerStats

logger = logging.getLogger(__name__)


class Ticket:
    """One admitted request. release() is idempotent."""

    def __init__(self, controller: "AdmissionController") -> None:
        self._controller = controller
        self._lock = threading.Lock()
        self._released = False

    def release(self) -> bool:
        """Return the slot. True only for the call that actually released it."""
        with self._lock:
            if self._released:
                return False
            self._released = True
        self._controller._decrement()
        return True

    @property
    def released(self) -> bool:
        return self._released

    def __enter__(self) -> "Ticket":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class AdmissionController:
    """
    Usage:
        controller = AdmissionController(max_inflight=100)
        ticket = controller.admit()      # may raise OverloadError
        try:
            ...
        finally:
            ticket.release()
    """

    def __init__(
        self,
        max_inflight: int,
        retry_after: int = 30,
        stats: Optional[ServerStats] = None,
    ) -> None:
        if max_inflight < 1:
            raise ValueError(f"max_inflight must be >= 1, got {max_inflight}")
        self.max_inflight = max_inflight
        self.retry_after  = retry_after
        self._stats       = stats
        self._lock        = threading.Lock()
        self._inflight    = 0

    def admit(self) -> Ticket:
        with self._lock:
            if self._inflight >= self.max_inflight:
                inflight = self._inflight
                rejected = True
            else:
                self._inflight += 1
                inflight = self._inflight
                rejected = False

        if rejected:
            logger.warning(
                "Admission rejected: inflight=%d max=%d", inflight, self.max_inflight,
            )
            if self._stats is not None:
                self._stats.record_overload()
            raise OverloadError(inflight, self.max_inflight, self.retry_after)

        self._publish(inflight)
        return Ticket(self)

    def _decrement(self) -> None:
        with self._lock:
            if self._inflight == 0:
                logger.error("Inflight counter underflow ignored")
                return
            self._inflight -= 1
            inflight = self._inflight
        self._publish(inflight)

    def _publish(self, inflight: int) -> None:
        if self._stats is not None:
            self._stats.set_inflight(inflight)

    @property
    def inflight(self) -> int:
        with self._lock:
            return self._inflight
