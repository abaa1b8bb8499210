"""
Unit tests for the destination store client (StorePool / SeriesStore).

Tests:
- Row mapping and skipped points without a valid time
- DB error mapping and PoolTimeout passthrough
- Schema bootstrap with and without TimescaleDB
- Pool rebuild exclusivity (generation check) and failure handling
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg
import psycopg.errors
import pytest
from psycopg_pool import PoolTimeout

from tsm_client import (
    ConstraintViolation,
    RetryableError,
    SeriesStore,
    StoreConfig,
    StoreInitializationError,
    StorePool,
    is_pool_exhausted,
)
from tsm_client.utils import parse_point_time
from tsmigrate.coordinator import Record


def mock_pool():
    cur = MagicMock()
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    pool = MagicMock()
    pool.connection.return_value.__enter__.return_value = conn
    return pool, cur


class TestParsePointTime:
    def test_iso_with_offset(self):
        assert parse_point_time("2024-01-01T10:00:00+02:00") == datetime(
            2024, 1, 1, 8, tzinfo=timezone.utc
        )

    def test_naive_iso_is_utc(self):
        assert parse_point_time("2024-01-01 10:00:00") == datetime(
            2024, 1, 1, 10, tzinfo=timezone.utc
        )

    def test_zulu_suffix(self):
        assert parse_point_time("2024-01-01T00:00:00Z") == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_epoch_seconds_and_millis(self):
        expected = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert parse_point_time("1704067200") == expected
        assert parse_point_time("1704067200000") == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "yesterday"])
    def test_invalid(self, raw):
        assert parse_point_time(raw) is None


class TestSeriesStoreWrites:
    def test_write_batch_upserts_rows(self):
        pool, cur = mock_pool()
        store = SeriesStore(pool, table="points", time_field="time")
        records = [
            Record("a", {"time": "2024-01-01T00:00:00+00:00", "value": "1"}),
            Record("b", {"time": "2024-01-01T00:00:01+00:00", "value": "2"}),
        ]

        assert store.write_batch(records) == 2

        cur.executemany.assert_called_once()
        _, rows = cur.executemany.call_args[0]
        assert [r["tag"] for r in rows] == ["a", "b"]
        assert rows[0]["ts"] == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert rows[1]["fields"].obj == {"time": "2024-01-01T00:00:01+00:00", "value": "2"}

    def test_points_without_time_are_skipped(self):
        pool, cur = mock_pool()
        store = SeriesStore(pool)
        records = [
            Record("a", {"value": "1"}),
            Record("a", {"time": "garbage"}),
            Record("a", {"time": "2024-01-01T00:00:00Z"}),
        ]
        assert store.write_batch(records) == 1
        assert store.skipped_records == 2

    def test_all_skipped_does_not_touch_db(self):
        pool, cur = mock_pool()
        store = SeriesStore(pool)
        assert store.write_batch([Record("a", {"value": "1"})]) == 0
        pool.connection.assert_not_called()

    def test_operational_error_is_retryable(self):
        pool, cur = mock_pool()
        cur.executemany.side_effect = psycopg.OperationalError("server closed the connection")
        store = SeriesStore(pool)
        with pytest.raises(RetryableError):
            store.write_batch([Record("a", {"time": "2024-01-01T00:00:00Z"})])

    def test_unique_violation_is_constraint(self):
        pool, cur = mock_pool()
        cur.executemany.side_effect = psycopg.errors.UniqueViolation("duplicate key")
        store = SeriesStore(pool)
        with pytest.raises(ConstraintViolation):
            store.write_batch([Record("a", {"time": "2024-01-01T00:00:00Z"})])

    def test_pool_timeout_passes_through(self):
        pool, cur = mock_pool()
        pool.connection.side_effect = PoolTimeout("couldn't get a connection after 10.00 sec")
        store = SeriesStore(pool)
        with pytest.raises(PoolTimeout) as ei:
            store.write_batch([Record("a", {"time": "2024-01-01T00:00:00Z"})])
        assert is_pool_exhausted(ei.value)


class TestSchemaBootstrap:
    def test_creates_hypertable_when_timescale_present(self):
        pool, cur = mock_pool()
        cur.fetchone.return_value = (1,)
        SeriesStore(pool).ensure_schema()
        assert cur.execute.call_count == 3

    def test_skips_hypertable_without_timescale(self):
        pool, cur = mock_pool()
        cur.fetchone.return_value = None
        SeriesStore(pool).ensure_schema()
        assert cur.execute.call_count == 2

    def test_hypertable_disabled(self):
        pool, cur = mock_pool()
        SeriesStore(pool, create_hypertable=False).ensure_schema()
        assert cur.execute.call_count == 1


class TestStorePool:
    def test_builds_pool_from_config(self, mock_dsn):
        with patch("tsm_client.client.ConnectionPool") as CP:
            pool = StorePool(StoreConfig(dsn=mock_dsn, pool_min=2, pool_max=4))
        kwargs = CP.call_args.kwargs
        assert kwargs["conninfo"] == mock_dsn
        assert kwargs["min_size"] == 2
        assert kwargs["max_size"] == 4
        assert kwargs["kwargs"]["application_name"] == "tsmigrate"
        assert pool.available is True
        assert pool.generation == 0

    def test_build_failure_raises_initialization_error(self, mock_dsn):
        with patch("tsm_client.client.ConnectionPool", side_effect=psycopg.OperationalError("no")):
            with pytest.raises(StoreInitializationError):
                StorePool(StoreConfig(dsn=mock_dsn))

    def test_reinitialize_skips_when_already_rebuilt(self, mock_dsn):
        with patch("tsm_client.client.ConnectionPool") as CP:
            pool = StorePool(StoreConfig(dsn=mock_dsn))
            assert pool.reinitialize(seen_generation=0) is True
            assert pool.generation == 1
            # a second caller that saw generation 0 must not rebuild again
            assert pool.reinitialize(seen_generation=0) is True
            assert pool.generation == 1
            assert CP.call_count == 2

    def test_reinitialize_failure_never_raises(self, mock_dsn):
        with patch("tsm_client.client.ConnectionPool") as CP:
            pool = StorePool(StoreConfig(dsn=mock_dsn))
            CP.side_effect = psycopg.OperationalError("connection refused")
            assert pool.reinitialize() is False
        assert pool.available is False
        assert pool.generation == 0

    def test_close_is_idempotent(self, mock_dsn):
        with patch("tsm_client.client.ConnectionPool") as CP:
            pool = StorePool(StoreConfig(dsn=mock_dsn))
            pool.close()
            pool.close()
        CP.return_value.close.assert_called_once()
        assert pool.reinitialize() is False
