from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

import httpx
import psycopg
from loguru import logger
from psycopg_pool import PoolTimeout

from tsm_client.errors import ConstraintViolation, RetryableError, TimeoutExceeded

from ..errors import OperationCancelled, RetryExhaustedError, SourceClientError, SourceServerError
from .types import CancelToken

T = TypeVar("T")

_TRANSIENT_HINTS = ("timeout", "temporar", "busy", "retry", "unavailable", "connection reset")


def default_retry_classifier(exc: BaseException) -> bool:
    """True for failures worth retrying (network, server, pool timeouts)."""
    if isinstance(exc, (SourceClientError, ConstraintViolation, ValueError, TypeError, KeyError)):
        return False
    if isinstance(
        exc,
        (
            SourceServerError,
            RetryableError,
            TimeoutExceeded,
            PoolTimeout,
            TimeoutError,
            ConnectionError,
            httpx.TransportError,
            psycopg.OperationalError,
        ),
    ):
        return True
    msg = str(exc).lower()
    return any(hint in msg for hint in _TRANSIENT_HINTS)


@dataclass
class RetryPolicy:
    """Retry with capped backoff.

    backoff_multiplier=1.0 gives a fixed delay of initial_backoff_ms.
    With jitter the delay is drawn from 50-100% of the computed value.
    """

    max_attempts: int = 5
    initial_backoff_ms: int = 50
    max_backoff_ms: int = 2000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    classify_retryable: Callable[[BaseException], bool] = field(
        default=default_retry_classifier
    )

    def next_backoff_ms(self, attempt: int) -> int:
        """Delay after the given (1-based) failed attempt."""
        raw = self.initial_backoff_ms * (self.backoff_multiplier ** max(0, attempt - 1))
        capped = min(raw, self.max_backoff_ms)
        if self.jitter:
            capped = random.uniform(capped * 0.5, capped)
        return int(capped)

    def execute(
        self,
        operation: Callable[[], T],
        label: str,
        cancel: Optional[CancelToken] = None,
    ) -> T:
        """Run operation, retrying retryable failures.

        Raises the original exception when it is not retryable,
        RetryExhaustedError once max_attempts is used up, and
        OperationCancelled when the token fires during a backoff.
        """
        attempt = 0
        while True:
            if cancel is not None and cancel.cancelled:
                raise OperationCancelled(label)
            attempt += 1
            try:
                return operation()
            except Exception as exc:
                if not self.classify_retryable(exc):
                    logger.debug(f"{label}: non-retryable {type(exc).__name__}: {exc}")
                    raise
                if attempt >= self.max_attempts:
                    logger.error(f"{label}: giving up after {attempt} attempts: {exc}")
                    raise RetryExhaustedError(label, attempt, exc) from exc

                delay_ms = self.next_backoff_ms(attempt)
                logger.warning(
                    f"{label}: attempt {attempt}/{self.max_attempts} failed "
                    f"({type(exc).__name__}: {exc}); retrying in {delay_ms}ms"
                )
                if cancel is not None:
                    if cancel.wait(delay_ms / 1000.0):
                        raise OperationCancelled(label) from exc
                else:
                    time.sleep(delay_ms / 1000.0)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_backoff_ms=settings.initial_backoff_ms,
            max_backoff_ms=settings.max_backoff_ms,
            backoff_multiplier=settings.backoff_multiplier,
            jitter=settings.jitter,
        )
