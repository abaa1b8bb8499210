"""
End-to-end pipeline tests with in-memory source and sink.
"""

import threading
import time
from datetime import timedelta

from prometheus_client import REGISTRY

from tsm_client import RetryableError
from tsmigrate.coordinator import (
    FailedRequestLog,
    PipelineConfig,
    PipelineCoordinator,
    WorkerState,
)
from tsmigrate.errors import SourceClientError, SourceServerError


def make_config(t0, tags, *, windows=1, window_sec=3600, readers=1, writers=1, **kw):
    params = dict(
        tags=tags,
        start=t0,
        end=t0 + timedelta(seconds=windows * window_sec),
        queue_size=100,
        reader_pool_size=readers,
        writer_pool_size=writers,
        batch_read_size=window_sec,
        batch_write_size=2,
        enqueue_timeout_sec=0.05,
        backpressure_sleep_sec=0.01,
    )
    params.update(kw)
    return PipelineConfig(**params)


def emergency_count() -> float:
    return REGISTRY.get_sample_value("tsm_emergency_shutdowns_total") or 0.0


def test_two_tags_single_fetcher_single_writer(tmp_path, t0, fast_retry, make_source, make_sink):
    source = make_source(points_per_window=3)
    sink = make_sink()
    log = FailedRequestLog(tmp_path / "failed.ndjson")
    coord = PipelineCoordinator(
        make_config(t0, ["a", "b"]),
        source=source,
        sink=sink,
        failure_log=log,
        retry_policy=fast_retry,
    )

    result = coord.run()

    assert [len(b) for b in sink.batches] == [2, 2, 2]
    assert len(sink.records) == 6
    assert result.records_enqueued == 6
    assert result.records_written == 6
    assert result.failed_requests == 0
    assert result.aborted is False
    assert result.exit_code == 0
    assert log.replay() == []
    _, writers = coord.state.snapshot()
    assert [w.stop_reason for w in writers] == ["complete"]


def test_client_error_is_logged_and_pipeline_continues(
    tmp_path, t0, fast_retry, make_source, make_sink
):
    source = make_source(points_per_window=2, errors={"X": SourceClientError("HTTP 404", status_code=404)})
    sink = make_sink()
    log = FailedRequestLog(tmp_path / "failed.ndjson")
    coord = PipelineCoordinator(
        make_config(t0, ["X", "Y"], windows=2),
        source=source,
        sink=sink,
        failure_log=log,
        retry_policy=fast_retry,
    )

    result = coord.run()

    failed = log.replay()
    assert len(failed) == 2  # one per window of X
    assert all(f.is_client_error for f in failed)
    assert source.calls_for("X") == 2
    assert result.aborted is False
    assert {r.tag for r in sink.records} == {"Y"}
    assert result.records_written == 4


def test_server_error_triggers_emergency_shutdown(
    tmp_path, t0, fast_retry, make_source, make_sink
):
    before = emergency_count()
    source = make_source(
        points_per_window=2,
        errors={"bad": SourceServerError("HTTP 503", status_code=503)},
        delay_sec=0.01,
    )
    sink = make_sink()
    log = FailedRequestLog(tmp_path / "failed.ndjson")
    coord = PipelineCoordinator(
        make_config(t0, ["good", "bad"], windows=200, readers=2, writers=2),
        source=source,
        sink=sink,
        failure_log=log,
        retry_policy=fast_retry,
    )

    started = time.monotonic()
    result = coord.run()

    assert time.monotonic() - started < 5.0
    assert result.aborted is True
    assert result.exit_code == 2
    assert "Fetcher-2" in result.abort_reason
    assert emergency_count() - before == 1

    failed = log.replay()
    assert len(failed) == 1
    assert failed[0].tag == "bad"
    assert failed[0].is_client_error is False
    assert failed[0].status_code == 503

    # the healthy fetcher was stopped well before finishing its 200 windows
    assert source.calls_for("good") < 200
    fetchers, writers = coord.state.snapshot()
    assert all(f.state is WorkerState.STOPPED for f in fetchers)
    assert all(w.stop_reason == "emergency" for w in writers)
    # everything enqueued was either written or reported as dropped
    assert result.records_written + result.records_dropped == result.records_enqueued
    assert coord.queue.size == 0


def test_no_loss_under_backpressure(tmp_path, t0, fast_retry, make_source, make_sink):
    source = make_source(points_per_window=5)
    sink = make_sink(delay_sec=0.002)
    tags = [f"tag-{i}" for i in range(3)]
    coord = PipelineCoordinator(
        make_config(t0, tags, windows=4, readers=2, writers=2, queue_size=5, batch_write_size=3),
        source=source,
        sink=sink,
        failure_log=FailedRequestLog(tmp_path / "failed.ndjson"),
        retry_policy=fast_retry,
    )

    result = coord.run()

    expected = 3 * 4 * 5
    assert result.records_enqueued == expected
    assert result.records_written == expected
    keys = {(r.tag, r.fields["time"]) for r in sink.records}
    assert len(keys) == expected
    assert result.aborted is False


def test_concurrent_shutdown_requests_run_once(tmp_path, t0, fast_retry, make_source, make_sink):
    before = emergency_count()
    source = make_source(points_per_window=1, delay_sec=0.01)
    sink = make_sink()
    coord = PipelineCoordinator(
        make_config(t0, ["a", "b", "c"], windows=500, readers=3, writers=2),
        source=source,
        sink=sink,
        failure_log=FailedRequestLog(tmp_path / "failed.ndjson"),
        retry_policy=fast_retry,
    )

    holder = {}
    runner = threading.Thread(target=lambda: holder.setdefault("result", coord.run()))
    runner.start()
    deadline = time.monotonic() + 2.0
    while len(coord.state.snapshot()[0]) < 3 and time.monotonic() < deadline:
        time.sleep(0.01)

    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def trigger(i):
        barrier.wait()
        ok = coord.initiate_shutdown(f"trigger-{i}")
        with lock:
            outcomes.append(ok)

    triggers = [threading.Thread(target=trigger, args=(i,)) for i in range(8)]
    for t in triggers:
        t.start()
    for t in triggers:
        t.join(timeout=2.0)
    runner.join(timeout=5.0)

    assert not runner.is_alive()
    assert outcomes.count(True) == 1
    assert emergency_count() - before == 1
    result = holder["result"]
    assert result.aborted is True
    assert result.abort_reason.startswith("trigger-")
    _, writers = coord.state.snapshot()
    assert [w.stop_reason for w in writers] == ["emergency", "emergency"]


def test_health_and_release_are_idempotent(tmp_path, t0, fast_retry, make_source, make_sink):
    coord = PipelineCoordinator(
        make_config(t0, ["a"]),
        source=make_source(),
        sink=make_sink(),
        failure_log=FailedRequestLog(tmp_path / "failed.ndjson"),
        retry_policy=fast_retry,
    )
    with coord:
        h = coord.health()
        assert h.capacity == 100
        assert h.fetchers_alive == 0
        assert h.shutdown_in_progress is False
        assert h.destination_available is None
        coord.run()
    coord.release()
    assert coord.state.running is False


def test_destination_write_failure_aborts_pipeline(
    tmp_path, t0, fast_retry, make_source, make_sink
):
    before = emergency_count()
    source = make_source(points_per_window=5)
    sink = make_sink(fail_with=RetryableError("server closed the connection"))
    coord = PipelineCoordinator(
        make_config(
            t0,
            ["a", "b"],
            windows=100,
            readers=2,
            writers=1,
            queue_size=3,
            enqueue_timeout_sec=30.0,
        ),
        source=source,
        sink=sink,
        failure_log=FailedRequestLog(tmp_path / "failed.ndjson"),
        retry_policy=fast_retry,
    )

    started = time.monotonic()
    result = coord.run()

    # fetchers blocked on the full queue were released promptly
    assert time.monotonic() - started < 5.0
    assert result.aborted is True
    assert result.exit_code == 2
    assert "Writer-1" in result.abort_reason
    assert emergency_count() - before == 1
    assert sink.attempts == fast_retry.max_attempts
    assert result.records_written == 0
    assert result.records_failed == 2
    # the only writer exited, so everything else queued was dropped
    assert result.records_dropped == result.records_enqueued - result.records_failed
    assert result.records_dropped > 0
    assert result.failed_requests == 0
    fetchers, _ = coord.state.snapshot()
    assert all(f.state is WorkerState.STOPPED for f in fetchers)
    assert coord.queue.size == 0


def test_shutdown_request_after_release_is_ignored(
    tmp_path, t0, fast_retry, make_source, make_sink
):
    coord = PipelineCoordinator(
        make_config(t0, ["a"]),
        source=make_source(),
        sink=make_sink(),
        failure_log=FailedRequestLog(tmp_path / "failed.ndjson"),
        retry_policy=fast_retry,
    )
    # never started
    assert coord.initiate_shutdown("early") is False

    result = coord.run()
    before = emergency_count()

    assert coord.initiate_shutdown("late") is False
    assert emergency_count() == before
    assert coord.state.shutdown_in_progress is False
    assert coord.result().aborted is False
    assert result.aborted is False


def test_running_flag_tracks_lifecycle(tmp_path, t0, fast_retry, make_source, make_sink):
    coord = PipelineCoordinator(
        make_config(t0, ["a"], windows=20),
        source=make_source(delay_sec=0.01),
        sink=make_sink(),
        failure_log=FailedRequestLog(tmp_path / "failed.ndjson"),
        retry_policy=fast_retry,
    )
    assert coord.state.running is False

    runner = threading.Thread(target=coord.run)
    runner.start()
    assert coord.state._running.wait(timeout=2.0)
    runner.join(timeout=5.0)

    assert not runner.is_alive()
    assert coord.state.running is False
