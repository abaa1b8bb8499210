"""
Time-series Store Client Library

Thin psycopg 3 client for the destination store (TimescaleDB / PostgreSQL):
a swappable connection pool handle plus an idempotent batch writer.

Usage:
    from tsm_client import StoreConfig, StorePool, SeriesStore

    pool = StorePool(StoreConfig(dsn="postgresql://..."))
    store = SeriesStore(pool, table="series_points", time_field="time")
    store.ensure_schema()
    store.write_batch(points)
"""

from .client import SeriesPoint, SeriesStore, StoreConfig, StorePool
from .errors import (
    ConstraintViolation,
    RetryableError,
    StoreInitializationError,
    StoreOperationalError,
    TimeoutExceeded,
    is_pool_exhausted,
    map_db_error,
)

__version__ = "1.0.0"
__all__ = [
    "StoreConfig",
    "StorePool",
    "SeriesStore",
    "SeriesPoint",
    "StoreOperationalError",
    "RetryableError",
    "ConstraintViolation",
    "TimeoutExceeded",
    "StoreInitializationError",
    "is_pool_exhausted",
    "map_db_error",
]
