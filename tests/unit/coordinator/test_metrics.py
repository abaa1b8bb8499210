"""
Unit tests for pipeline metrics (light sanity checks).
"""

from prometheus_client import REGISTRY

from tsmigrate.coordinator import FailedRequestLog, PipelineConfig, PipelineCoordinator
from tsmigrate.metrics import metrics_registry


def sample(name, labels=None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def test_registry_exposes_metrics():
    assert metrics_registry.records_written_total is not None
    assert metrics_registry.queue_depth is not None
    assert metrics_registry.emergency_shutdowns_total is not None


def test_pipeline_updates_counters(tmp_path, t0, fast_retry, make_source, make_sink):
    written_before = sample("tsm_records_written_total")
    enqueued_before = sample("tsm_records_enqueued_total")
    ok_batches_before = sample("tsm_write_batches_total", {"outcome": "success"})

    coord = PipelineCoordinator(
        PipelineConfig(
            tags=["a"],
            start=t0,
            end=t0.replace(hour=2),
            queue_size=10,
            reader_pool_size=1,
            writer_pool_size=1,
            batch_read_size=3600,
            batch_write_size=4,
        ),
        source=make_source(points_per_window=4),
        sink=make_sink(),
        failure_log=FailedRequestLog(tmp_path / "failed.ndjson"),
        retry_policy=fast_retry,
    )
    coord.run()

    assert sample("tsm_records_written_total") - written_before == 8
    assert sample("tsm_records_enqueued_total") - enqueued_before == 8
    assert sample("tsm_write_batches_total", {"outcome": "success"}) - ok_batches_before == 2
    assert sample("tsm_queue_depth") == 0
