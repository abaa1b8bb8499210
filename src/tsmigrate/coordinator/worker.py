from __future__ import annotations

import queue
from time import perf_counter
from typing import List, Optional

from loguru import logger

from ..metrics.registry import (
    RECORDS_WRITTEN_TOTAL,
    WRITE_BATCHES_TOTAL,
    WRITE_LATENCY_SECONDS,
)
from .policy import RetryPolicy
from .queue import SharedQueue
from .types import BatchSink, CompletionGroup, Record, ShutdownTrigger, Stop, WorkerState


class WriteWorker:
    """Drains the shared queue into the destination in batches of batch_size.

    Terminates on the first Stop it takes, after flushing its partial batch.
    A batch that fails past the retry policy is fatal: the worker triggers the
    pipeline shutdown and exits without touching the queue again.
    """

    def __init__(
        self,
        writer_id: int,
        *,
        queue: SharedQueue,
        sink: BatchSink,
        retry_policy: RetryPolicy,
        group: CompletionGroup,
        on_fatal: ShutdownTrigger,
        batch_size: int,
        flush_interval_sec: Optional[float] = None,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.writer_id = writer_id
        self.name = f"Writer-{writer_id}"
        self._queue = queue
        self._sink = sink
        self._retry = retry_policy
        self._group = group
        self._on_fatal = on_fatal
        self._batch_size = batch_size
        self._flush_interval = flush_interval_sec

        self._buffer: List[Record] = []
        self._state = WorkerState.IDLE
        self.stop_reason: Optional[str] = None

        self.records_written = 0
        self.records_failed = 0
        self.batches_written = 0
        self.batches_failed = 0
        self.batch_sizes: List[int] = []

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def run(self) -> None:
        """Thread entry point; signals the completion group exactly once."""
        self._state = WorkerState.RUNNING
        try:
            logger.info(f"{self.name} started (batch_size={self._batch_size})")
            self._loop()
        except Exception:
            logger.exception(f"{self.name} encountered error")
            self._on_fatal(f"{self.name}: unexpected writer failure")
        finally:
            self._state = WorkerState.STOPPED
            self._group.done()
            logger.info(
                f"{self.name} stopped (written={self.records_written}, "
                f"batches={self.batches_written}, failed_records={self.records_failed})"
            )

    def _loop(self) -> None:
        while True:
            try:
                item = self._queue.get(timeout=self._flush_interval)
            except queue.Empty:
                # time-based flush of a partial batch
                if self._buffer and not self._flush():
                    return
                continue

            if isinstance(item, Stop):
                self.stop_reason = item.reason
                self._state = WorkerState.DRAINING
                logger.info(f"{self.name} received stop signal ({item.reason})")
                self._flush()
                return

            self._buffer.append(item)
            if len(self._buffer) >= self._batch_size and not self._flush():
                return

    def _flush(self) -> bool:
        """Write the buffered batch; returns False when the write failed for good."""
        if not self._buffer:
            return True

        batch = self._buffer
        self._buffer = []
        t0 = perf_counter()
        try:
            self._retry.execute(
                lambda: self._sink.write_batch(batch),
                label=f"{self.name} write batch of {len(batch)}",
            )
        except Exception as exc:
            self.batches_failed += 1
            self.records_failed += len(batch)
            WRITE_BATCHES_TOTAL.labels(outcome="failure").inc()
            logger.error(
                f"{self.name} failed to write batch of {len(batch)} records, "
                f"destination needs attention: {exc}"
            )
            self._on_fatal(f"{self.name}: destination write failed")
            return False
        finally:
            WRITE_LATENCY_SECONDS.observe(perf_counter() - t0)

        self.batches_written += 1
        self.records_written += len(batch)
        self.batch_sizes.append(len(batch))
        WRITE_BATCHES_TOTAL.labels(outcome="success").inc()
        RECORDS_WRITTEN_TOTAL.inc(len(batch))
        logger.debug(f"{self.name} wrote batch of {len(batch)} records")
        return True
