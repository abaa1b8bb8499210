from __future__ import annotations

import threading
from typing import Sequence

from loguru import logger

from ..errors import OperationCancelled, RetryExhaustedError, SourceClientError
from ..metrics.registry import BACKPRESSURE_WAITS_TOTAL, RECORDS_ENQUEUED_TOTAL
from .dlq import FailedRequestLog
from .policy import RetryPolicy
from .queue import SharedQueue
from .types import (
    CancelToken,
    CompletionGroup,
    FailedRequest,
    FetchClientError,
    FetchResult,
    FetchServerError,
    FetchSuccess,
    Record,
    ShutdownTrigger,
    SourceQuery,
    TimeWindow,
    WorkerState,
)

DEFAULT_ENQUEUE_TIMEOUT_SEC = 30.0
DEFAULT_BACKPRESSURE_SLEEP_SEC = 5.0


class FetchWorker:
    """Pulls every (tag, window) of its partition from the source into the queue.

    Client errors skip the window; a server error that survives the retry
    policy records the failure and triggers a pipeline-wide shutdown.
    """

    def __init__(
        self,
        fetcher_id: int,
        tags: Sequence[str],
        windows: Sequence[TimeWindow],
        *,
        source: SourceQuery,
        queue: SharedQueue,
        retry_policy: RetryPolicy,
        failure_log: FailedRequestLog,
        group: CompletionGroup,
        on_fatal: ShutdownTrigger,
        enqueue_timeout_sec: float = DEFAULT_ENQUEUE_TIMEOUT_SEC,
        backpressure_sleep_sec: float = DEFAULT_BACKPRESSURE_SLEEP_SEC,
    ):
        self.fetcher_id = fetcher_id
        self.name = f"Fetcher-{fetcher_id}"
        self._tags = list(tags)
        self._windows = list(windows)
        self._source = source
        self._queue = queue
        self._retry = retry_policy
        self._failure_log = failure_log
        self._group = group
        self._on_fatal = on_fatal
        self._enqueue_timeout = enqueue_timeout_sec
        self._backpressure_sleep = backpressure_sleep_sec

        self._token = CancelToken()
        self._state_lock = threading.Lock()
        self._state = WorkerState.IDLE

        self.windows_processed = 0
        self.records_enqueued = 0
        self.client_errors = 0
        self.server_errors = 0

    @property
    def tags(self) -> list[str]:
        return list(self._tags)

    @property
    def running(self) -> bool:
        return not self._token.cancelled

    @property
    def state(self) -> WorkerState:
        return self._state

    def run(self) -> None:
        """Thread entry point; signals the completion group exactly once."""
        with self._state_lock:
            if self._state is WorkerState.IDLE and self.running:
                self._state = WorkerState.RUNNING
        try:
            logger.info(f"{self.name} started with {len(self._tags)} tags")
            self._process_assigned_tags()
        except OperationCancelled as exc:
            logger.info(f"{self.name} interrupted: {exc}")
        except Exception:
            logger.exception(f"{self.name} encountered error")
        finally:
            with self._state_lock:
                self._state = WorkerState.STOPPED
            self._group.done()
            logger.info(
                f"{self.name} stopped (windows={self.windows_processed}, "
                f"records={self.records_enqueued}, client_errors={self.client_errors}, "
                f"server_errors={self.server_errors})"
            )

    def stop(self) -> None:
        """Request a stop; wakes a blocked enqueue or backoff. Idempotent."""
        with self._state_lock:
            if self._token.cancelled:
                return
            self._token.cancel()
            if self._state is WorkerState.RUNNING:
                self._state = WorkerState.DRAINING
        self._queue.interrupt()
        logger.info(f"{self.name} stop requested")

    # ---------- per tag / window ----------

    def _process_assigned_tags(self) -> None:
        logger.info(f"{self.name} processing {len(self._windows)} time windows per tag")
        for tag in self._tags:
            if not self.running:
                return
            if not self._process_tag(tag):
                return
        logger.info(f"{self.name} completed processing all assigned tags")

    def _process_tag(self, tag: str) -> bool:
        """Returns False when the worker must stop."""
        for window in self._windows:
            if not self.running:
                return False

            result = self.fetch(tag, window)
            if isinstance(result, FetchSuccess):
                if not self._queue_records(result.records, tag, window):
                    return False
                self.windows_processed += 1
            elif isinstance(result, FetchClientError):
                self._handle_client_error(tag, window, result)
            else:
                self._handle_server_error(tag, window, result)
                return False
        return True

    def fetch(self, tag: str, window: TimeWindow) -> FetchResult:
        """Query one window through the retry policy and classify the outcome."""
        label = f"Fetch data for tag {tag} {window}"
        try:
            records = self._retry.execute(
                lambda: self._source.query(tag, window), label=label, cancel=self._token
            )
        except SourceClientError as exc:
            return FetchClientError(exc.status_code, str(exc))
        except RetryExhaustedError as exc:
            return FetchServerError(exc.status_code, str(exc))
        except OperationCancelled:
            raise
        except Exception as exc:
            return FetchServerError(
                getattr(exc, "status_code", None), f"{type(exc).__name__}: {exc}"
            )
        return FetchSuccess(list(records))

    def _queue_records(self, records: list[Record], tag: str, window: TimeWindow) -> bool:
        if not records:
            return True
        for record in records:
            if not self._enqueue(record, tag, window):
                logger.info(f"{self.name} stopped while queueing data for tag {tag} {window}")
                return False
        logger.info(f"{self.name} processed {len(records)} points for tag {tag} in {window}")
        return True

    def _enqueue(self, record: Record, tag: str, window: TimeWindow) -> bool:
        while self.running:
            if self._queue.put(record, timeout=self._enqueue_timeout, cancel=self._token):
                self.records_enqueued += 1
                RECORDS_ENQUEUED_TOTAL.inc()
                return True
            if not self.running:
                break
            BACKPRESSURE_WAITS_TOTAL.inc()
            logger.warning(
                f"{self.name} queue is full (size: {self._queue.size}), waiting before retry. "
                f"Tag: {tag}, Interval: {window}"
            )
            self._token.wait(self._backpressure_sleep)
        return False

    # ---------- failures ----------

    def _handle_client_error(
        self, tag: str, window: TimeWindow, result: FetchClientError
    ) -> None:
        self.client_errors += 1
        logger.error(f"{self.name} Client error - skipping tag {tag} {window}: {result.message}")
        self._failure_log.record(
            FailedRequest(
                tag=tag,
                window=window,
                message=result.message,
                status_code=result.status_code,
                is_client_error=True,
            )
        )

    def _handle_server_error(
        self, tag: str, window: TimeWindow, result: FetchServerError
    ) -> None:
        self.server_errors += 1
        logger.error(
            f"{self.name} Server error - all retries failed for tag {tag} {window}: "
            f"{result.message}"
        )
        self._failure_log.record(
            FailedRequest(
                tag=tag,
                window=window,
                message=result.message,
                status_code=result.status_code,
                is_client_error=False,
            )
        )
        self._on_fatal(f"{self.name}: source server error for tag {tag}")
        logger.error(f"{self.name} Maximum retry attempts reached, initiated shutdown.")
