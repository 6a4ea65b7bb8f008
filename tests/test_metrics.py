from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlmodel import select

from storefront_core.metrics import PerformanceRecorder, round_half_up
from storefront_core.models import PerformanceMetric

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeTimer:
    def __init__(self):
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def recorder(database, timer):
    recorder = PerformanceRecorder(database, clock=lambda: NOW, timer=timer)
    yield recorder
    recorder.shutdown()


def add_metric(database, endpoint, duration, age=timedelta(minutes=1), status=200):
    with database.session() as session:
        session.add(PerformanceMetric(
            endpoint=endpoint,
            method="GET",
            duration=duration,
            status=status,
            timestamp=NOW - age,
        ))
        session.commit()


def test_aggregate_average_count_and_slow_requests(database, recorder):
    add_metric(database, "/api/products", 400)
    add_metric(database, "/api/products", 600)

    [row] = recorder.aggregate(now=NOW)
    assert row.endpoint == "/api/products"
    assert row.avgDuration == 500
    assert row.requests == 2
    assert row.slowRequests == 1


def test_exactly_500ms_is_not_slow(database, recorder):
    add_metric(database, "/api/categories", 500)
    [row] = recorder.aggregate(now=NOW)
    assert row.slowRequests == 0


def test_metrics_older_than_24_hours_are_excluded(database, recorder):
    add_metric(database, "/api/products", 100, age=timedelta(hours=23))
    add_metric(database, "/api/products", 900, age=timedelta(hours=25))
    add_metric(database, "/api/old", 100, age=timedelta(days=2))

    rows = recorder.aggregate(now=NOW)
    assert [r.endpoint for r in rows] == ["/api/products"]
    assert rows[0].requests == 1
    assert rows[0].avgDuration == 100


def test_aggregate_groups_by_endpoint_most_recent_first(database, recorder):
    add_metric(database, "/api/a", 10, age=timedelta(hours=2))
    add_metric(database, "/api/b", 20, age=timedelta(hours=1))
    add_metric(database, "/api/a", 30, age=timedelta(minutes=5))

    rows = recorder.aggregate(now=NOW)
    assert [r.endpoint for r in rows] == ["/api/a", "/api/b"]
    assert rows[0].avgDuration == 20


def test_aggregate_rounds_half_up(database, recorder):
    add_metric(database, "/api/x", 1)
    add_metric(database, "/api/x", 2)
    [row] = recorder.aggregate(now=NOW)
    assert row.avgDuration == 2
    assert round_half_up(2.5) == 3


def test_aggregate_empty(recorder):
    assert recorder.aggregate(now=NOW) == []


def test_record_appends_metric(database, recorder):
    recorder.record("/api/orders", "POST", 321, 201)

    [row] = recorder.aggregate(now=NOW)
    assert row.endpoint == "/api/orders"
    assert row.avgDuration == 321


def test_record_swallows_persistence_errors():
    database = MagicMock()
    database.session.side_effect = RuntimeError("database is down")
    recorder = PerformanceRecorder(database, clock=lambda: NOW)
    try:
        recorder.record("/api/products", "GET", 10, 200)  # must not raise
    finally:
        recorder.shutdown()


def test_start_tracking_measures_elapsed_and_writes_in_background(recorder, timer):
    track_end = recorder.start_tracking("/api/categories", "GET")
    timer.value += 0.75
    track_end(200)
    recorder.drain(timeout=5)

    [row] = recorder.aggregate(now=NOW)
    assert row.endpoint == "/api/categories"
    assert row.avgDuration == 750
    assert row.slowRequests == 1


def test_track_end_endpoint_override(recorder):
    track_end = recorder.start_tracking("/coupons/7", "GET")
    track_end(404, endpoint="/coupons/{coupon_id}")
    recorder.drain(timeout=5)

    assert [r.endpoint for r in recorder.aggregate(now=NOW)] == ["/coupons/{coupon_id}"]


def test_tracking_failure_does_not_reach_caller():
    database = MagicMock()
    database.session.side_effect = RuntimeError("database is down")
    recorder = PerformanceRecorder(database, clock=lambda: NOW)
    try:
        recorder.start_tracking("/api/products", "GET")(500)
        recorder.drain(timeout=5)
    finally:
        recorder.shutdown()


def test_track_after_shutdown_is_dropped(recorder):
    recorder.shutdown()
    recorder.start_tracking("/api/products", "GET")(200)  # must not raise


def test_track_decorator_records_status(recorder, timer):
    @recorder.track_performance("/api/settings")
    def handler():
        timer.value += 0.1
        return MagicMock(status_code=201)

    @recorder.track_performance("/api/broken", method="POST")
    def broken():
        raise ValueError("boom")

    handler()
    with pytest.raises(ValueError):
        broken()
    recorder.drain(timeout=5)

    rows = {r.endpoint: r for r in recorder.aggregate(now=NOW)}
    assert rows["/api/settings"].avgDuration == 100
    assert rows["/api/broken"].requests == 1


def test_recorded_metric_round_trips_as_aware_utc(database, recorder):
    recorder.record("/api/products", "GET", 42, 200)

    with database.session() as session:
        [metric] = session.exec(select(PerformanceMetric)).all()
    assert metric.timestamp == NOW
    assert metric.timestamp.tzinfo is not None


def test_aggregate_accepts_naive_utc_now(database, recorder):
    recorder.record("/api/products", "GET", 42, 200)
    [row] = recorder.aggregate(now=NOW.replace(tzinfo=None))
    assert row.requests == 1
