"""
tsmigrate - parallel time-series migration from an HTTP query API into
PostgreSQL/TimescaleDB.
"""

__version__ = "1.0.0"
