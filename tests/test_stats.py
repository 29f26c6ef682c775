"""Unit tests for the per-endpoint statistics aggregator."""

import random
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from stats import StatsAggregator, success_rate

HEALTH = "http://localhost:8000/health"
DEVICES = "http://localhost:8000/api/devices"


class TestRecord:
    def test_bucket_created_on_first_write(self):
        aggregator = StatsAggregator()
        assert aggregator.get(HEALTH) is None
        assert len(aggregator) == 0

        aggregator.record(HEALTH, 0.05, True)

        stats = aggregator.get(HEALTH)
        assert stats is not None
        assert stats.total == 1
        assert stats.success == 1
        assert stats.errors == 0
        assert stats.min_s == 0.05
        assert stats.max_s == 0.05
        assert stats.last_update_unix_ms is not None

    def test_total_is_success_plus_errors_after_every_write(self):
        aggregator = StatsAggregator()
        rng = random.Random(3)
        for _ in range(200):
            aggregator.record(rng.choice([HEALTH, DEVICES]), rng.random(), rng.random() < 0.7)
            for stats in aggregator.snapshot().values():
                assert stats.total == stats.success + stats.errors

    def test_min_max_track_extremes(self):
        aggregator = StatsAggregator()
        durations = [0.2, 0.05, 0.9, 0.31, 0.05, 0.7]
        for duration in durations:
            aggregator.record(HEALTH, duration, True)

        stats = aggregator.get(HEALTH)
        assert stats.min_s == min(durations)
        assert stats.max_s == max(durations)
        assert stats.total_s == pytest.approx(sum(durations))
        assert stats.avg_s == pytest.approx(sum(durations) / len(durations))

    def test_failures_count_as_errors(self):
        aggregator = StatsAggregator()
        aggregator.record(HEALTH, 0.1, False)
        aggregator.record(HEALTH, 0.1, True)
        aggregator.record(HEALTH, 0.1, False)

        stats = aggregator.get(HEALTH)
        assert stats.errors == 2
        assert stats.success == 1
        assert stats.success_rate == pytest.approx(100.0 / 3)


class TestConcurrency:
    def test_no_lost_updates_under_concurrent_writers(self):
        aggregator = StatsAggregator()
        writers = 16
        per_writer = 500
        start = threading.Barrier(writers)

        def write(worker_id: int) -> None:
            start.wait()
            for index in range(per_writer):
                aggregator.record(HEALTH, 0.001 * (index % 7 + 1), (index + worker_id) % 3 != 0)

        with ThreadPoolExecutor(max_workers=writers) as pool:
            list(pool.map(write, range(writers)))

        stats = aggregator.get(HEALTH)
        assert stats.total == writers * per_writer
        assert stats.success + stats.errors == stats.total
        assert stats.min_s == pytest.approx(0.001)
        assert stats.max_s == pytest.approx(0.007)


class TestSnapshot:
    def test_snapshot_twice_without_writes_is_equal(self):
        aggregator = StatsAggregator()
        aggregator.record(HEALTH, 0.1, True)
        aggregator.record(DEVICES, 0.2, False)

        assert aggregator.snapshot() == aggregator.snapshot()

    def test_snapshot_returns_copies(self):
        aggregator = StatsAggregator()
        aggregator.record(HEALTH, 0.1, True)

        snapshot = aggregator.snapshot()
        snapshot[HEALTH].total = 999
        snapshot.pop(HEALTH)

        stats = aggregator.get(HEALTH)
        assert stats.total == 1

    def test_snapshot_not_affected_by_later_writes(self):
        aggregator = StatsAggregator()
        aggregator.record(HEALTH, 0.1, True)
        before = aggregator.snapshot()

        aggregator.record(HEALTH, 0.5, False)

        assert before[HEALTH].total == 1
        assert before[HEALTH].max_s == 0.1


def test_success_rate_zero_total():
    assert success_rate(0, 0) == 0.0
    assert success_rate(3, 4) == 75.0
