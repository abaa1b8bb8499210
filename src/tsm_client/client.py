from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Mapping, Optional, Protocol, Sequence, runtime_checkable

import psycopg
from loguru import logger
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from . import sql as q
from .errors import StoreInitializationError, StoreOperationalError, map_db_error
from .utils import parse_point_time


@dataclass
class StoreConfig:
    dsn: str
    app_name: Optional[str] = "tsmigrate"
    connect_timeout: float = 10.0
    statement_timeout_ms: Optional[int] = None
    pool_min: int = 1
    pool_max: int = 10


@runtime_checkable
class SeriesPoint(Protocol):
    """Anything with a tag and a string field map can be written."""

    tag: str
    fields: Mapping[str, str]


class StorePool:
    """Owns the destination connection pool.

    The pool may be swapped by reinitialize(); callers always go through
    connection(), which reads the current pool once, so a rebuild never hands
    out a half-built handle. Rebuilds are serialised by a lock and skipped when
    another thread already replaced the pool the caller saw failing.
    """

    def __init__(self, config: StoreConfig):
        self._cfg = config
        self._rebuild_lock = threading.Lock()
        self._generation = 0
        self._available = False
        self._closed = False
        logger.info(f"Initializing store connection pool with max size: {config.pool_max}")
        self._pool = self._build()
        self._available = True
        logger.info("Store connection pool initialized successfully")

    @property
    def available(self) -> bool:
        return self._available

    @property
    def generation(self) -> int:
        return self._generation

    def _build(self) -> ConnectionPool:
        kwargs: dict = {}
        if self._cfg.app_name:
            kwargs["application_name"] = self._cfg.app_name
        if self._cfg.statement_timeout_ms is not None:
            kwargs["options"] = f"-c statement_timeout={self._cfg.statement_timeout_ms}"
        try:
            return ConnectionPool(
                conninfo=self._cfg.dsn,
                min_size=self._cfg.pool_min,
                max_size=self._cfg.pool_max,
                timeout=self._cfg.connect_timeout,
                kwargs=kwargs,
                open=True,
            )
        except Exception as exc:
            self._available = False
            raise StoreInitializationError(f"Failed to build connection pool: {exc}") from exc

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        pool = self._pool
        with pool.connection() as conn:
            yield conn

    def ping(self) -> bool:
        """Cheap liveness query; raises on failure."""
        with self.connection() as conn, conn.cursor() as cur:
            cur.execute(q.HEALTH)
            cur.fetchone()
        return True

    def mark_available(self) -> None:
        self._available = True

    def mark_unavailable(self) -> None:
        self._available = False

    def reinitialize(self, seen_generation: Optional[int] = None) -> bool:
        """Close and rebuild the pool. Never raises; returns True on success."""
        with self._rebuild_lock:
            if self._closed:
                return False
            if seen_generation is not None and seen_generation != self._generation:
                logger.info("Store connection pool already reinitialized by another caller")
                return self._available

            logger.info("Reinitializing store connection pool...")
            old = self._pool
            try:
                old.close()
            except Exception as exc:
                logger.warning(f"Error while closing old connection pool: {exc}")

            try:
                self._pool = self._build()
            except StoreInitializationError as exc:
                self._available = False
                logger.error(f"Failed to reinitialize store connection pool: {exc}")
                return False

            self._generation += 1
            self._available = True
            logger.info("Store connection pool reinitialized successfully")
            return True

    def close(self) -> None:
        with self._rebuild_lock:
            if self._closed:
                return
            self._closed = True
            self._available = False
            logger.info("Closing store connection pool")
            self._pool.close()
            logger.info("Store connection pool closed successfully")


class SeriesStore:
    """Batch writer for the series table.

    Rows are keyed by (tag, ts) and upserted, so a batch replayed after a
    retry does not duplicate points.
    """

    def __init__(
        self,
        pool: StorePool,
        *,
        table: str = "series_points",
        time_field: str = "time",
        create_hypertable: bool = True,
    ):
        self._pool = pool
        self._table = table
        self._time_field = time_field
        self._create_hypertable = create_hypertable
        self._upsert = q.upsert_series(table)
        self._skipped_lock = threading.Lock()
        self.skipped_records = 0

    @property
    def pool(self) -> StorePool:
        return self._pool

    # ---------- admin / health ----------

    def health(self) -> bool:
        return self._pool.ping()

    def ensure_schema(self) -> None:
        """Create the series table (and hypertable when TimescaleDB is installed)."""
        try:
            with self._pool.connection() as conn, conn.cursor() as cur:
                cur.execute(q.create_table_statement(self._table))
                if not self._create_hypertable:
                    return
                cur.execute(q.TIMESCALE_INSTALLED)
                if cur.fetchone():
                    cur.execute(q.create_hypertable_statement(self._table))
                    logger.info(f"Hypertable ensured for {self._table}")
                else:
                    logger.warning("TimescaleDB extension not found. Skipping hypertable creation.")
        except psycopg.Error as exc:
            raise map_db_error(exc) from exc

    # ---------- writes ----------

    def _rows(self, records: Sequence[SeriesPoint]) -> list[dict]:
        rows = []
        skipped = 0
        for r in records:
            ts = parse_point_time(r.fields.get(self._time_field))
            if ts is None:
                skipped += 1
                continue
            rows.append({"tag": r.tag, "ts": ts, "fields": Jsonb(dict(r.fields))})
        if skipped:
            with self._skipped_lock:
                self.skipped_records += skipped
            logger.warning(
                f"Skipped {skipped} points without a valid '{self._time_field}' value "
                f"(table={self._table})"
            )
        return rows

    def write_batch(self, records: Sequence[SeriesPoint]) -> int:
        """Upsert a batch; returns the number of rows sent."""
        rows = self._rows(records)
        if not rows:
            return 0
        try:
            with self._pool.connection() as conn, conn.cursor() as cur:
                cur.executemany(self._upsert, rows)
        except PoolTimeout:
            raise
        except psycopg.Error as exc:
            raise map_db_error(exc) from exc
        return len(rows)


__all__ = [
    "StoreConfig",
    "StorePool",
    "SeriesStore",
    "SeriesPoint",
    "StoreOperationalError",
]
