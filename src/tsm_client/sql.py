from __future__ import annotations

from typing import Sequence

from psycopg import sql as psql

# Column set and conflict/update columns for the series table
SERIES_PRESET: dict[str, list[str]] = {
    "cols": ["tag", "ts", "fields"],
    "conflict": ["tag", "ts"],
    "update": ["fields"],
}

HEALTH = "SELECT 1"

TIMESCALE_INSTALLED = "SELECT 1 FROM pg_extension WHERE extname = 'timescaledb'"


def create_table_statement(table: str) -> psql.Composed:
    return psql.SQL(
        "CREATE TABLE IF NOT EXISTS {} ("
        "tag TEXT NOT NULL, "
        "ts TIMESTAMPTZ NOT NULL, "
        "fields JSONB NOT NULL, "
        "ingested_at TIMESTAMPTZ NOT NULL DEFAULT NOW(), "
        "PRIMARY KEY (tag, ts))"
    ).format(psql.Identifier(table))


def create_hypertable_statement(table: str) -> psql.Composed:
    return psql.SQL("SELECT create_hypertable({}, 'ts', if_not_exists => TRUE)").format(
        psql.Literal(table)
    )


def upsert_statement(
    table: str,
    cols: Sequence[str],
    conflict_cols: Sequence[str],
    update_cols: Sequence[str],
) -> psql.Composed:
    """INSERT ... ON CONFLICT ... DO UPDATE with named parameters (%(name)s)."""
    ins_cols = psql.SQL(", ").join(psql.Identifier(c) for c in cols)
    ins_vals = psql.SQL(", ").join(psql.Placeholder(c) for c in cols)
    conflict = psql.SQL(", ").join(psql.Identifier(c) for c in conflict_cols)
    setlist = psql.SQL(", ").join(
        psql.SQL("{} = EXCLUDED.{}").format(psql.Identifier(c), psql.Identifier(c))
        for c in update_cols
    )
    return psql.SQL(
        "INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) DO UPDATE SET {}, ingested_at = NOW()"
    ).format(psql.Identifier(table), ins_cols, ins_vals, conflict, setlist)


def upsert_series(table: str) -> psql.Composed:
    return upsert_statement(
        table,
        SERIES_PRESET["cols"],
        SERIES_PRESET["conflict"],
        SERIES_PRESET["update"],
    )
