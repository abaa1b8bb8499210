from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from prometheus_client import start_http_server

from tsm_client import SeriesStore, StoreConfig, StoreOperationalError, StorePool

from .coordinator import (
    ConnectionMonitor,
    FailedRequestLog,
    PipelineConfig,
    PipelineCoordinator,
    RetryPolicy,
)
from .errors import ConfigValidationError, StartupError
from .settings import MigratorSettings, load_settings, resolve_tags
from .source import SourceClient

app = typer.Typer(help="tsmigrate - time-series migration CLI")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2


def config_opt() -> Path:
    return typer.Option(
        ..., "--config", "-c", envvar="TSM_CONFIG", help="Path to the JSON config file"
    )


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Replace loguru's default sink; optionally add a rotating file sink."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name: <22} | {message}",
    )
    if log_file is not None:
        logger.add(str(log_file), level=level.upper(), rotation="100 MB", retention=5, enqueue=True)


def _load(config: Path) -> MigratorSettings:
    try:
        settings = load_settings(config)
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        raise typer.Exit(EXIT_FAILED)
    configure_logging(settings.log_level, settings.log_file)
    return settings


def _store_config(settings: MigratorSettings) -> StoreConfig:
    dest = settings.destination
    return StoreConfig(
        dsn=dest.dsn,
        connect_timeout=dest.connect_timeout,
        pool_min=dest.pool_min,
        pool_max=dest.pool_max,
    )


def _open_store(settings: MigratorSettings) -> SeriesStore:
    dest = settings.destination
    pool = StorePool(_store_config(settings))
    return SeriesStore(
        pool,
        table=dest.table,
        time_field=dest.time_field,
        create_hypertable=dest.create_hypertable,
    )


def bootstrap_schema(store: SeriesStore, retry: RetryPolicy) -> None:
    """Create the destination schema; raises StartupError when it cannot."""
    try:
        retry.execute(store.ensure_schema, label="Destination schema bootstrap")
    except Exception as e:
        raise StartupError(f"schema bootstrap failed: {e}") from e


@app.command("run")
def run(
    config: Path = config_opt(),
    metrics_port: Optional[int] = typer.Option(
        None, "--metrics-port", help="Expose Prometheus metrics on this port"
    ),
):
    """Migrate every configured tag over the configured time range."""
    settings = _load(config)
    try:
        tags = resolve_tags(settings)
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        raise typer.Exit(EXIT_FAILED)

    port = metrics_port if metrics_port is not None else settings.metrics_port
    if port:
        start_http_server(port)
        logger.info(f"Metrics available on :{port}/metrics")

    retry = RetryPolicy.from_settings(settings.retry)
    try:
        store = _open_store(settings)
        bootstrap_schema(store, retry)
    except (StoreOperationalError, StartupError) as e:
        logger.error(f"Startup failed, no workers started: {e}")
        raise typer.Exit(EXIT_FAILED)

    monitor = ConnectionMonitor(store.pool, retry, interval_sec=settings.monitor.interval_sec)
    failure_log = FailedRequestLog(settings.failed_requests_path)
    pipeline_cfg = PipelineConfig.from_settings(settings, tags)

    try:
        with SourceClient.from_settings(settings) as source:
            coordinator = PipelineCoordinator(
                pipeline_cfg,
                source=source,
                sink=store,
                failure_log=failure_log,
                retry_policy=retry,
                monitor=monitor,
            )
            with coordinator:
                result = coordinator.run()
    finally:
        store.pool.close()

    logger.info(
        f"Migration finished: enqueued={result.records_enqueued} "
        f"written={result.records_written} failed={result.records_failed} "
        f"dropped={result.records_dropped} skipped={store.skipped_records} "
        f"failed_requests={result.failed_requests}"
    )
    if result.aborted:
        logger.error(f"Migration aborted: {result.abort_reason}")
    raise typer.Exit(result.exit_code)


@app.command("bootstrap-schema")
def bootstrap_schema_cmd(config: Path = config_opt()):
    """Create the destination table (and hypertable when TimescaleDB is installed)."""
    settings = _load(config)
    try:
        store = _open_store(settings)
    except StoreOperationalError as e:
        logger.error(f"Cannot connect to destination: {e}")
        raise typer.Exit(EXIT_FAILED)
    try:
        bootstrap_schema(store, RetryPolicy.from_settings(settings.retry))
        logger.success(f"Schema ready: {settings.destination.table}")
    except StartupError as e:
        logger.error(str(e))
        raise typer.Exit(EXIT_FAILED)
    finally:
        store.pool.close()


@app.command("ping")
def ping(config: Path = config_opt()):
    """Check that the destination answers."""
    settings = _load(config)
    ok = False
    try:
        store = _open_store(settings)
    except StoreOperationalError as e:
        logger.error(f"Cannot connect to destination: {e}")
    else:
        try:
            ok = store.health()
        except Exception as e:
            logger.error(f"Destination health check failed: {e}")
        finally:
            store.pool.close()
    typer.echo(json.dumps({"ok": ok}, indent=2))
    if not ok:
        raise typer.Exit(EXIT_FAILED)


@app.command("failed-requests")
def failed_requests(
    config: Path = config_opt(),
    limit: int = typer.Option(1000, "--limit", help="Maximum entries to print"),
):
    """Print recorded failed requests as NDJSON."""
    settings = _load(config)
    log = FailedRequestLog(settings.failed_requests_path, mkdirs=False)
    for entry in log.replay(max_records=limit):
        typer.echo(json.dumps(entry.to_dict(), default=str))


if __name__ == "__main__":
    app()
