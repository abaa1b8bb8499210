"""Migration pipeline coordinator

Fetch workers -> bounded SharedQueue -> write workers, with:
- per-fetcher tag partitions and fixed time windows
- RetryPolicy with exponential backoff and jitter
- emergency shutdown on systemic failure
- destination connection monitor
- failed-request log (file-based NDJSON)
- Prometheus metrics
"""

from .types import (
    STOP,
    BatchSink,
    CancelToken,
    CompletionGroup,
    FailedRequest,
    FetchClientError,
    FetchResult,
    FetchServerError,
    FetchSuccess,
    QueueItem,
    Record,
    SourceQuery,
    Stop,
    TimeWindow,
    WorkerState,
)
from .policy import RetryPolicy, default_retry_classifier
from .queue import SharedQueue
from .distributor import distribute_tags
from .windows import calculate_time_windows
from .dlq import FailedRequestLog
from .fetcher import FetchWorker
from .worker import WriteWorker
from .monitor import ConnectionMonitor
from .pipeline import (
    PipelineConfig,
    PipelineCoordinator,
    PipelineHealth,
    PipelineResult,
    PipelineState,
    WorkerPool,
)

__all__ = [
    # types
    "Record",
    "Stop",
    "STOP",
    "QueueItem",
    "TimeWindow",
    "FailedRequest",
    "FetchSuccess",
    "FetchClientError",
    "FetchServerError",
    "FetchResult",
    "SourceQuery",
    "BatchSink",
    "WorkerState",
    "CancelToken",
    "CompletionGroup",
    # policies
    "RetryPolicy",
    "default_retry_classifier",
    # planning
    "distribute_tags",
    "calculate_time_windows",
    # runtime
    "SharedQueue",
    "FetchWorker",
    "WriteWorker",
    "ConnectionMonitor",
    "PipelineConfig",
    "PipelineCoordinator",
    "PipelineHealth",
    "PipelineResult",
    "PipelineState",
    "WorkerPool",
    # tooling
    "FailedRequestLog",
]
