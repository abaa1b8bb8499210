"""
Custom exceptions for the time-series store client.

Provides structured error handling so the pipeline retry policy can tell
transient destination failures from permanent ones.
"""


class StoreOperationalError(Exception):
    """Base operational error for the store client."""

    pass


class RetryableError(StoreOperationalError):
    """Temporary errors that should be retried with backoff."""

    pass


class ConstraintViolation(StoreOperationalError):
    """Database constraint violations (unique, check, not null...)."""

    pass


class TimeoutExceeded(StoreOperationalError):
    """Query or connection timeout errors."""

    pass


class StoreInitializationError(StoreOperationalError):
    """Connection pool could not be built or the schema could not be created."""

    pass


def map_db_error(e: Exception) -> StoreOperationalError:
    import psycopg
    import psycopg.errors as E

    if isinstance(e, (E.SerializationFailure, E.DeadlockDetected, psycopg.OperationalError)):
        return RetryableError(str(e))
    if isinstance(e, (E.UniqueViolation, E.CheckViolation, E.NotNullViolation)):
        return ConstraintViolation(str(e))
    if isinstance(e, E.QueryCanceled):
        return TimeoutExceeded(str(e))
    return StoreOperationalError(str(e))


def is_pool_exhausted(e: BaseException) -> bool:
    """True when the failure means no connection could be taken from the pool."""
    from psycopg_pool import PoolTimeout, TooManyRequests

    if isinstance(e, (PoolTimeout, TooManyRequests)):
        return True
    msg = str(e).lower()
    return "couldn't get a connection" in msg or "timeout to get a connection" in msg
