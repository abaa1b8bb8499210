"""
Exceptions raised by the migration pipeline.

Source failures carry the HTTP status so fetch workers can tell a skipped
request (client error) from a systemic outage (server error).
"""

from __future__ import annotations

from typing import Optional


class MigratorError(Exception):
    """Base error for the migrator."""

    pass


class ConfigValidationError(MigratorError):
    """Configuration is missing or invalid; raised before any worker starts."""

    pass


class StartupError(MigratorError):
    """Unrecoverable failure while preparing the pipeline (e.g. schema bootstrap)."""

    pass


class SourceError(MigratorError):
    """Failure reported by the source query API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SourceClientError(SourceError):
    """4xx-class response: the request itself is wrong, retrying will not help."""

    pass


class SourceServerError(SourceError):
    """5xx-class response or unusable payload: retryable."""

    pass


class RetryExhaustedError(MigratorError):
    """All attempts of a retried operation failed."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")

    @property
    def status_code(self) -> Optional[int]:
        return getattr(self.last_error, "status_code", None)


class OperationCancelled(MigratorError):
    """A retried operation was abandoned because its worker was stopped."""

    def __init__(self, label: str):
        self.label = label
        super().__init__(f"{label} cancelled")
