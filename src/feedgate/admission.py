"""Admission control for outbound requests.

Bounds the number of in-flight requests globally and per destination host.
Excess requests are rejected immediately, never queued.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog

from feedgate.errors import ErrorCode, ProxyError

if TYPE_CHECKING:
    from collections.abc import Iterator

log = structlog.get_logger()


class AdmissionController:
    """Tracks in-flight request counts. Owned by AppState, one per process."""

    def __init__(self, global_limit: int = 8, host_limit: int = 3) -> None:
        self.global_limit = global_limit
        self.host_limit = host_limit
        self._total = 0
        self._per_host: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        return self._total

    def host_count(self, host: str) -> int:
        return self._per_host.get(host, 0)

    def acquire(self, host: str) -> bool:
        """Grant a slot for ``host``. The caller must ``release`` it exactly once."""
        with self._lock:
            current = self._per_host.get(host, 0)
            if self._total >= self.global_limit or current >= self.host_limit:
                return False
            self._total += 1
            self._per_host[host] = current + 1
            return True

    def release(self, host: str) -> None:
        with self._lock:
            self._total = max(0, self._total - 1)
            current = self._per_host.get(host, 0)
            # Drop the entry at zero so one-off hosts don't accumulate.
            if current <= 1:
                self._per_host.pop(host, None)
            else:
                self._per_host[host] = current - 1

    @contextmanager
    def slot(self, host: str) -> Iterator[None]:
        """Hold a slot for the duration of the block, or raise TOO_MANY_REQUESTS."""
        if not self.acquire(host):
            log.warning(
                "admission_denied",
                host=host,
                in_flight=self._total,
                host_in_flight=self.host_count(host),
            )
            raise ProxyError(ErrorCode.TOO_MANY_REQUESTS, "Too many requests")
        try:
            yield
        finally:
            self.release(host)
