from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from loguru import logger

from ..metrics.registry import EMERGENCY_SHUTDOWNS_TOTAL, QUEUE_DEPTH
from .distributor import distribute_tags
from .dlq import FailedRequestLog
from .fetcher import DEFAULT_BACKPRESSURE_SLEEP_SEC, DEFAULT_ENQUEUE_TIMEOUT_SEC, FetchWorker
from .monitor import ConnectionMonitor
from .policy import RetryPolicy
from .queue import SharedQueue
from .types import STOP, BatchSink, CompletionGroup, Record, SourceQuery, Stop
from .windows import calculate_time_windows
from .worker import WriteWorker


@dataclass(frozen=True)
class PipelineConfig:
    """Validated values the pipeline runs with."""

    tags: Sequence[str]
    start: datetime
    end: datetime
    queue_size: int
    reader_pool_size: int
    writer_pool_size: int
    batch_read_size: int
    batch_write_size: int
    enqueue_timeout_sec: float = DEFAULT_ENQUEUE_TIMEOUT_SEC
    backpressure_sleep_sec: float = DEFAULT_BACKPRESSURE_SLEEP_SEC
    flush_interval_sec: Optional[float] = None

    @classmethod
    def from_settings(cls, settings, tags: Sequence[str]) -> "PipelineConfig":
        p = settings.processing
        return cls(
            tags=list(tags),
            start=settings.source.time_range.start,
            end=settings.source.time_range.end,
            queue_size=p.queue_size,
            reader_pool_size=p.threads.reader_pool_size,
            writer_pool_size=p.threads.writer_pool_size,
            batch_read_size=p.batch.read_size,
            batch_write_size=p.batch.write_size,
            enqueue_timeout_sec=p.enqueue_timeout_sec,
            backpressure_sleep_sec=p.backpressure_sleep_sec,
            flush_interval_sec=p.flush_interval_sec,
        )


@dataclass
class PipelineState:
    """Lifecycle state shared by the coordinator and its workers."""

    shutdown_in_progress: bool = False
    emergency_reason: Optional[str] = None
    fetchers: List[FetchWorker] = field(default_factory=list)
    writers: List[WriteWorker] = field(default_factory=list)
    _running: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def running(self) -> bool:
        return self._running.is_set()

    @running.setter
    def running(self, value: bool) -> None:
        if value:
            self._running.set()
        else:
            self._running.clear()

    def try_begin_shutdown(self, reason: str) -> bool:
        """Set shutdown_in_progress once; only the first caller gets True."""
        with self._lock:
            if self.shutdown_in_progress:
                return False
            self.shutdown_in_progress = True
            self.emergency_reason = reason
            return True

    def register_fetcher(self, fetcher: FetchWorker) -> bool:
        with self._lock:
            if self.shutdown_in_progress:
                return False
            self.fetchers.append(fetcher)
            return True

    def register_writer(self, writer: WriteWorker) -> None:
        with self._lock:
            self.writers.append(writer)

    def snapshot(self) -> tuple[list[FetchWorker], list[WriteWorker]]:
        with self._lock:
            return list(self.fetchers), list(self.writers)


@dataclass(frozen=True)
class PipelineHealth:
    queue_size: int
    capacity: int
    fetchers_alive: int
    writers_alive: int
    shutdown_in_progress: bool
    destination_available: Optional[bool]


@dataclass(frozen=True)
class PipelineResult:
    records_enqueued: int
    records_written: int
    records_failed: int
    records_dropped: int
    failed_requests: int
    aborted: bool
    abort_reason: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return 2 if self.aborted else 0


class WorkerPool:
    """Fixed thread pool plus a completion group counting its workers."""

    def __init__(self, name: str, size: int):
        self.name = name
        self.group = CompletionGroup(name)
        self._executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix=name)
        self._futures: List[Future] = []

    def submit(self, worker) -> None:
        self.group.add()
        try:
            self._futures.append(self._executor.submit(worker.run))
        except RuntimeError:
            self.group.done()
            raise

    @property
    def alive(self) -> int:
        return sum(1 for f in self._futures if not f.done())

    def wait(self, timeout: Optional[float] = None) -> bool:
        logger.info(f"Waiting for {self.name}s to complete...")
        done = self.group.wait(timeout)
        if done:
            logger.info(f"All {self.name}s completed")
        return done

    def close(self, timeout: float = 30.0) -> None:
        if self.group.wait(timeout):
            self._executor.shutdown(wait=True)
        else:
            logger.warning(
                f"{self.group.pending} {self.name}s still running after {timeout}s, "
                "abandoning their threads"
            )
            self._executor.shutdown(wait=False, cancel_futures=True)


class PipelineCoordinator:
    """Owns the fetch and write pools and their start/stop sequencing.

    Normal completion: fetchers finish, one STOP per writer is queued, writers
    drain and exit, resources are released. Emergency shutdown
    (initiate_shutdown) may be requested by any worker; it runs once, signals
    the fetchers, queues a Stop per writer and finishes the join/release on a
    separate thread so the requesting worker is never blocked by it.

    Example:
        coord = PipelineCoordinator(cfg, source=client, sink=store,
                                    failure_log=log, retry_policy=RetryPolicy())
        result = coord.run()
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        source: SourceQuery,
        sink: BatchSink,
        failure_log: FailedRequestLog,
        retry_policy: Optional[RetryPolicy] = None,
        write_retry_policy: Optional[RetryPolicy] = None,
        monitor: Optional[ConnectionMonitor] = None,
        shutdown_timeout_sec: float = 30.0,
    ):
        self._cfg = config
        self._source = source
        self._sink = sink
        self._failure_log = failure_log
        self._retry = retry_policy or RetryPolicy()
        self._write_retry = write_retry_policy or self._retry
        self._monitor = monitor
        self._shutdown_timeout = shutdown_timeout_sec

        self._queue = SharedQueue(config.queue_size)
        self.state = PipelineState()
        self._fetch_pool: Optional[WorkerPool] = None
        self._write_pool: Optional[WorkerPool] = None
        self._shutdown_thread: Optional[threading.Thread] = None
        self._release_lock = threading.Lock()
        self._started = False
        self._released = False
        self.records_dropped = 0

    @property
    def queue(self) -> SharedQueue:
        return self._queue

    # ---------- lifecycle ----------

    def start(self) -> None:
        """Start all writers, then all fetchers."""
        if self._started:
            raise RuntimeError("pipeline already started")
        self._started = True

        windows = calculate_time_windows(self._cfg.start, self._cfg.end, self._cfg.batch_read_size)
        logger.info(
            f"Migrating {len(self._cfg.tags)} tags over {len(windows)} time windows "
            f"[{self._cfg.start} - {self._cfg.end})"
        )
        assignment = distribute_tags(self._cfg.tags, self._cfg.reader_pool_size)

        QUEUE_DEPTH.set_function(lambda: self._queue.size)
        if self._monitor is not None:
            self._monitor.start()

        self.state.running = True
        self._start_writers()
        self._start_fetchers(assignment, windows)

    def _start_writers(self) -> None:
        count = self._cfg.writer_pool_size
        logger.info(f"Starting {count} writer threads...")
        self._write_pool = WorkerPool("writer", count)
        for i in range(count):
            writer = WriteWorker(
                i + 1,
                queue=self._queue,
                sink=self._sink,
                retry_policy=self._write_retry,
                group=self._write_pool.group,
                on_fatal=self.initiate_shutdown,
                batch_size=self._cfg.batch_write_size,
                flush_interval_sec=self._cfg.flush_interval_sec,
            )
            self.state.register_writer(writer)
            self._write_pool.submit(writer)

    def _start_fetchers(self, assignment: list[list[str]], windows) -> None:
        count = self._cfg.reader_pool_size
        logger.info(f"Starting {count} fetcher threads...")
        self._fetch_pool = WorkerPool("fetcher", count)
        for i in range(count):
            fetcher = FetchWorker(
                i + 1,
                assignment[i],
                windows,
                source=self._source,
                queue=self._queue,
                retry_policy=self._retry,
                failure_log=self._failure_log,
                group=self._fetch_pool.group,
                on_fatal=self.initiate_shutdown,
                enqueue_timeout_sec=self._cfg.enqueue_timeout_sec,
                backpressure_sleep_sec=self._cfg.backpressure_sleep_sec,
            )
            if not self.state.register_fetcher(fetcher):
                logger.warning(f"{fetcher.name} not started: shutdown in progress")
                continue
            self._fetch_pool.submit(fetcher)

    def run(self) -> PipelineResult:
        """Run to completion (or until an emergency shutdown) and release resources."""
        self.start()
        try:
            self._fetch_pool.wait()
            if not self.state.shutdown_in_progress:
                self.send_stop_signals()
            self._write_pool.wait()
            shutdown_thread = self._shutdown_thread
            if shutdown_thread is not None:
                shutdown_thread.join()
        finally:
            self.release()
        return self.result()

    def send_stop_signals(self) -> None:
        """Queue exactly one STOP per writer once every fetcher has finished."""
        _, writers = self.state.snapshot()
        logger.info(f"Sending stop signals to {len(writers)} writers...")
        for _ in writers:
            while not self._queue.put(STOP, timeout=1.0):
                if self.state.shutdown_in_progress:
                    # the emergency path already queued a Stop per writer
                    return

    def initiate_shutdown(self, reason: str = "fatal error") -> bool:
        """Emergency shutdown. Idempotent and non-blocking for the caller."""
        if not self._started or self._released:
            logger.info(f"Ignoring shutdown request, pipeline is not running: {reason}")
            return False
        if not self.state.try_begin_shutdown(reason):
            logger.info("Shutdown already in progress")
            return False

        EMERGENCY_SHUTDOWNS_TOTAL.inc()
        logger.warning(f"Initiating emergency shutdown: {reason}")

        fetchers, writers = self.state.snapshot()
        logger.info(f"Stopping {len(fetchers)} fetchers...")
        for fetcher in fetchers:
            fetcher.stop()

        # one per configured writer, including any not yet started
        writer_count = max(len(writers), self._cfg.writer_pool_size)
        logger.info(f"Sending stop signals to {writer_count} writers...")
        for _ in range(writer_count):
            self._queue.put_control(Stop("emergency"))

        thread = threading.Thread(
            target=self._complete_shutdown, name="pipeline-shutdown", daemon=True
        )
        self._shutdown_thread = thread
        thread.start()
        return True

    def _complete_shutdown(self) -> None:
        try:
            if self._fetch_pool is not None:
                self._fetch_pool.wait()
            if self._write_pool is not None:
                self._write_pool.wait()
            leftovers = [item for item in self._queue.drain() if isinstance(item, Record)]
            if leftovers:
                self.records_dropped = len(leftovers)
                logger.error(
                    f"Emergency shutdown dropped {len(leftovers)} queued records "
                    "that no writer consumed"
                )
            self.release()
            logger.info("Emergency shutdown completed")
        except Exception:
            logger.exception("Shutdown process failed")

    def release(self) -> None:
        """Stop the monitor and shut the thread pools down. Idempotent."""
        with self._release_lock:
            if self._released:
                return
            self._released = True

        logger.info("Shutting down thread pools...")
        if self._monitor is not None:
            self._monitor.stop()
        if self._fetch_pool is not None:
            self._fetch_pool.close(self._shutdown_timeout)
        if self._write_pool is not None:
            self._write_pool.close(self._shutdown_timeout)
        self.state.running = False
        logger.info("Thread pools shutdown completed")

    def __enter__(self) -> "PipelineCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None and self._started and not self._released:
            self.initiate_shutdown(f"{type(exc).__name__} in pipeline owner")
        self.release()

    # ---------- reporting ----------

    def health(self) -> PipelineHealth:
        return PipelineHealth(
            queue_size=self._queue.size,
            capacity=self._queue.capacity,
            fetchers_alive=self._fetch_pool.alive if self._fetch_pool else 0,
            writers_alive=self._write_pool.alive if self._write_pool else 0,
            shutdown_in_progress=self.state.shutdown_in_progress,
            destination_available=(
                self._monitor.destination_available if self._monitor is not None else None
            ),
        )

    def result(self) -> PipelineResult:
        fetchers, writers = self.state.snapshot()
        return PipelineResult(
            records_enqueued=sum(f.records_enqueued for f in fetchers),
            records_written=sum(w.records_written for w in writers),
            records_failed=sum(w.records_failed for w in writers),
            records_dropped=self.records_dropped,
            failed_requests=self._failure_log.count,
            aborted=self.state.shutdown_in_progress,
            abort_reason=self.state.emergency_reason,
        )
