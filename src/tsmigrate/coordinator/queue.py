from __future__ import annotations

import queue
import threading
from collections import deque
from typing import Callable, Optional

from loguru import logger

from .types import CancelToken, QueueItem, Stop

WatermarkCallback = Callable[[int, int], None]


def _log_high(size: int, capacity: int) -> None:
    logger.warning(f"Shared queue above high watermark ({size}/{capacity}), producers will block")


def _log_low(size: int, capacity: int) -> None:
    logger.info(f"Shared queue recovered below low watermark ({size}/{capacity})")


class SharedQueue:
    """Bounded FIFO between fetch workers and write workers.

    put() blocks while the queue holds `capacity` items and gives up after the
    timeout, when interrupt() is called, or when the producer's cancel token
    is set. put_control() injects sentinels without waiting; it may
    exceed capacity by at most the number of sentinels sent, one per writer.
    get() blocks indefinitely unless a timeout is given.
    """

    def __init__(
        self,
        capacity: int,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        *,
        on_high: Optional[WatermarkCallback] = _log_high,
        on_low: Optional[WatermarkCallback] = _log_low,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._items: deque[QueueItem] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._interrupts = 0

        self._high_wm = (
            high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        )
        self._low_wm = low_watermark if low_watermark is not None else int(0.5 * capacity)
        self._on_high = on_high
        self._on_low = on_low
        self._high_fired = False  # avoid duplicate signals

        self._enqueued = 0
        self._dequeued = 0
        self._full_waits = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def put(
        self,
        item: QueueItem,
        timeout: float | None = None,
        cancel: Optional[CancelToken] = None,
    ) -> bool:
        """Append item, waiting for space.

        Returns False on timeout, on interrupt, or when `cancel` is (or becomes)
        cancelled. The token is checked under the lock, so a stop that lands
        before the call is not lost.
        """
        with self._not_full:
            if cancel is not None and cancel.cancelled:
                return False
            seen = self._interrupts
            if len(self._items) >= self._capacity:
                self._full_waits += 1
                fits = self._not_full.wait_for(
                    lambda: len(self._items) < self._capacity
                    or self._interrupts != seen
                    or (cancel is not None and cancel.cancelled),
                    timeout=timeout,
                )
                if not fits or len(self._items) >= self._capacity:
                    return False
                if cancel is not None and cancel.cancelled:
                    return False
            self._items.append(item)
            self._enqueued += 1
            self._not_empty.notify()
            fire_high = self._check_high()
            size = len(self._items)

        if fire_high and self._on_high:
            self._on_high(size, self._capacity)
        return True

    def put_control(self, item: Stop) -> None:
        """Inject a sentinel without waiting for space."""
        with self._lock:
            self._items.append(item)
            self._not_empty.notify()

    def get(self, timeout: float | None = None) -> QueueItem:
        """Pop the oldest item; raises queue.Empty when the timeout expires."""
        with self._not_empty:
            if not self._not_empty.wait_for(lambda: len(self._items) > 0, timeout=timeout):
                raise queue.Empty
            item = self._items.popleft()
            self._dequeued += 1
            self._not_full.notify()
            fire_low = self._check_low()
            size = len(self._items)

        if fire_low and self._on_low:
            self._on_low(size, self._capacity)
        return item

    def interrupt(self) -> None:
        """Wake every blocked producer so it can observe a stop request."""
        with self._lock:
            self._interrupts += 1
            self._not_full.notify_all()

    def drain(self) -> list[QueueItem]:
        """Remove and return everything still queued."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
            self._not_full.notify_all()
            return items

    def stats(self) -> dict:
        with self._lock:
            size = len(self._items)
            return {
                "size": size,
                "capacity": self._capacity,
                "enqueued": self._enqueued,
                "dequeued": self._dequeued,
                "full_waits": self._full_waits,
                "utilization_pct": size / self._capacity * 100,
            }

    # called with the lock held
    def _check_high(self) -> bool:
        if not self._high_fired and len(self._items) >= self._high_wm:
            self._high_fired = True
            return True
        return False

    def _check_low(self) -> bool:
        if self._high_fired and len(self._items) <= self._low_wm:
            self._high_fired = False
            return True
        return False
