"""
Failed-request log (file-based NDJSON).

Every fetch that was skipped on a client error or abandoned after its retries
is appended here for an operator to inspect. Entries are never replayed
automatically.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import List, Union

from loguru import logger

from ..metrics.registry import FAILED_REQUESTS_TOTAL
from .types import FailedRequest


class FailedRequestLog:
    """Append-only NDJSON log of FailedRequest entries.

    record() never raises: an I/O error on the log is reported and the
    pipeline carries on.
    """

    def __init__(self, path: Union[str, Path], *, mkdirs: bool = True):
        self.path = Path(path)
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._count = 0

    @property
    def count(self) -> int:
        """Entries recorded by this instance."""
        with self._lock:
            return self._count

    def record(self, failed: FailedRequest) -> None:
        kind = "client" if failed.is_client_error else "server"
        FAILED_REQUESTS_TOTAL.labels(kind=kind).inc()
        line = json.dumps(failed.to_dict(), ensure_ascii=False)
        with self._lock:
            self._count += 1
            try:
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as exc:
                logger.error(f"Failed to write failed-request log {self.path}: {exc} | {line}")

    def replay(self, max_records: int = 1000) -> List[FailedRequest]:
        """Read back up to max_records entries, oldest first."""
        if not self.path.exists():
            return []
        out: List[FailedRequest] = []
        with self._lock, self.path.open("r", encoding="utf-8") as f:
            for line in f:
                if len(out) >= max_records:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(FailedRequest.from_dict(json.loads(line)))
                except (ValueError, KeyError) as exc:
                    logger.warning(f"Skipping unreadable failed-request entry: {exc}")
        return out
