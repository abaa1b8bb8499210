from __future__ import annotations

import threading
from typing import Optional, Protocol

from loguru import logger

from tsm_client.errors import is_pool_exhausted

from ..errors import OperationCancelled
from ..metrics.registry import DESTINATION_AVAILABLE
from .policy import RetryPolicy
from .types import CancelToken

DEFAULT_CHECK_INTERVAL_SEC = 5.0


class MonitoredPool(Protocol):
    @property
    def available(self) -> bool: ...

    @property
    def generation(self) -> int: ...

    def ping(self) -> bool: ...

    def reinitialize(self, seen_generation: Optional[int] = None) -> bool: ...

    def mark_available(self) -> None: ...

    def mark_unavailable(self) -> None: ...


class ConnectionMonitor:
    """Background health check of the destination connection pool.

    Runs until stop(); a failed check never ends the loop. A ping that fails
    because the pool is exhausted rebuilds the pool and re-raises so the retry
    policy tries again against the fresh pool.
    """

    def __init__(
        self,
        pool: MonitoredPool,
        retry_policy: RetryPolicy,
        *,
        interval_sec: float = DEFAULT_CHECK_INTERVAL_SEC,
    ):
        self._pool = pool
        self._retry = retry_policy
        self._interval = interval_sec
        self._stop = CancelToken()
        self._thread: Optional[threading.Thread] = None
        self.checks = 0
        self.reinitializations = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def destination_available(self) -> bool:
        return self._pool.available

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(
            target=self._loop, name="destination-connection-monitor", daemon=True
        )
        self._thread.start()
        logger.info(f"Destination connection monitor started (interval={self._interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.cancel()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("Destination connection monitor stopped")

    def _loop(self) -> None:
        while not self._stop.cancelled:
            if not self.check_once():
                logger.error("Destination connection is not available")
            if self._stop.wait(self._interval):
                break

    def check_once(self) -> bool:
        """Run one health check; returns the resulting availability."""
        self.checks += 1
        try:
            self._retry.execute(
                self._ping_once, label="Destination connection check", cancel=self._stop
            )
        except OperationCancelled:
            return self._pool.available
        except Exception as exc:
            if self._pool.available:
                logger.error(f"Destination connection lost: {exc}")
            self._pool.mark_unavailable()
            DESTINATION_AVAILABLE.set(0)
            return False

        if not self._pool.available:
            logger.info("Destination connection restored")
            self._pool.mark_available()
        DESTINATION_AVAILABLE.set(1)
        return True

    def _ping_once(self) -> bool:
        generation = self._pool.generation
        try:
            return self._pool.ping()
        except Exception as exc:
            if is_pool_exhausted(exc):
                logger.warning("Connection pool timeout, attempting to reinitialize...")
                self.reinitializations += 1
                self._pool.reinitialize(seen_generation=generation)
            raise
