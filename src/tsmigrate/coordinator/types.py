from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Callable, List, Mapping, Optional, Protocol, Sequence, Union


@dataclass(frozen=True)
class Record:
    """One ingested observation. Immutable once constructed."""

    tag: str
    fields: Mapping[str, str]

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))


@dataclass(frozen=True)
class Stop:
    """Queue sentinel: the writer that takes it terminates."""

    reason: str = "complete"


STOP = Stop()

QueueItem = Union[Record, Stop]


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end)."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"window end {self.end} must be after start {self.start}")

    @property
    def seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    def __str__(self) -> str:
        return f"[{self.start.isoformat()} - {self.end.isoformat()}]"


@dataclass(frozen=True)
class FailedRequest:
    """A fetch that was abandoned (client error) or exhausted its retries."""

    tag: str
    window: TimeWindow
    message: str
    status_code: Optional[int]
    is_client_error: bool = False
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "tag": self.tag,
            "start": self.window.start.isoformat(),
            "end": self.window.end.isoformat(),
            "message": self.message,
            "status_code": self.status_code,
            "is_client_error": self.is_client_error,
            "recorded_at": self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FailedRequest":
        return cls(
            tag=data["tag"],
            window=TimeWindow(
                datetime.fromisoformat(data["start"]), datetime.fromisoformat(data["end"])
            ),
            message=data.get("message", ""),
            status_code=data.get("status_code"),
            is_client_error=bool(data.get("is_client_error", False)),
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
        )


# --- fetch outcomes ---


@dataclass(frozen=True)
class FetchSuccess:
    records: List[Record]


@dataclass(frozen=True)
class FetchClientError:
    status_code: Optional[int]
    message: str


@dataclass(frozen=True)
class FetchServerError:
    status_code: Optional[int]
    message: str


FetchResult = Union[FetchSuccess, FetchClientError, FetchServerError]


# --- collaborator protocols ---


class SourceQuery(Protocol):
    """Issues one source query per (tag, window)."""

    def query(self, tag: str, window: TimeWindow) -> List[Record]: ...


class BatchSink(Protocol):
    """Destination writer: raises on failure."""

    def write_batch(self, records: Sequence[Record]) -> int: ...


ShutdownTrigger = Callable[[str], None]


class WorkerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


# --- coordination primitives ---


class CancelToken:
    """Cooperative cancellation checked at every blocking boundary."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float]) -> bool:
        """Sleep up to timeout; returns True as soon as the token is cancelled."""
        return self._event.wait(timeout)


class CompletionGroup:
    """Counts outstanding workers; wait() returns when all have called done()."""

    def __init__(self, name: str):
        self.name = name
        self._cond = threading.Condition()
        self._pending = 0

    def add(self, n: int = 1) -> None:
        with self._cond:
            self._pending += n

    def done(self) -> None:
        with self._cond:
            if self._pending <= 0:
                raise RuntimeError(f"{self.name}: done() called more times than add()")
            self._pending -= 1
            if self._pending == 0:
                self._cond.notify_all()

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout=timeout)
