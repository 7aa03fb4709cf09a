"""
Analytics recorder tests — aggregates, funnel ratios, persistence and
rebuild from the call log.
"""

import json
import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from vmize_gateway.models.analytics import CallOutcome, CallRecord
from vmize_gateway.services.analytics_recorder import AnalyticsRecorder


def _call(customer_id="c1", outcome=CallOutcome.SUCCESS, duration_ms=100.0, timestamp=None, **kwargs):
    if timestamp is not None:
        kwargs["timestamp"] = timestamp
    return CallRecord(
        customer_id=customer_id,
        endpoint="/api/tryon",
        method="POST",
        outcome=outcome.value,
        duration_ms=duration_ms,
        **kwargs,
    )


class TestCallAggregates:
    def test_totals_and_daily(self, analytics):
        analytics.record_call(_call("c1"))
        analytics.record_call(_call("c2", CallOutcome.ERROR, error_reason="UpstreamUnavailable"))
        analytics.record_call(_call("c1", duration_ms=300.0))

        summary = analytics.summary()
        assert summary["totalCalls"] == 3
        assert summary["successfulCalls"] == 2
        assert summary["failedCalls"] == 1
        assert summary["uniqueCustomers"] == 2
        assert summary["successRate"] == pytest.approx(0.6667)
        assert summary["avgDurationMs"] == pytest.approx(166.67)

        today = datetime.now(timezone.utc).date().isoformat()
        day = analytics.daily_aggregates()[today]
        assert day.total == 3
        assert day.customers == {"c1", "c2"}

    def test_call_bucketed_by_utc_date(self, analytics):
        analytics.record_call(_call(timestamp="2026-03-01T23:30:00-05:00"))
        assert "2026-03-02" in analytics.daily_aggregates()

    def test_call_log_is_append_only_jsonl(self, analytics):
        analytics.record_call(_call("c1"))
        analytics.record_call(_call("c2"))
        lines = analytics.log_path.read_text().splitlines()
        assert [json.loads(line)["customer_id"] for line in lines] == ["c1", "c2"]

    def test_summary_windows(self, analytics):
        for i in range(12):
            analytics.record_call(_call(f"c{i % 7}"))

        summary = analytics.summary()
        assert len(summary["recentCalls"]) == 10
        assert len(summary["topCustomers"]) == 5
        assert summary["topCustomers"][0]["totalCalls"] == 2
        series = summary["dailyStats"]
        assert len(series) == 30
        assert series[-1]["date"] == datetime.now(timezone.utc).date().isoformat()
        assert series[-1]["total"] == 12
        assert series[0]["total"] == 0

    def test_empty_summary(self, analytics):
        summary = analytics.summary(today=date(2026, 1, 31))
        assert summary["successRate"] == 0.0
        assert summary["avgDurationMs"] == 0.0
        assert summary["dailyStats"][0]["date"] == "2026-01-02"


class TestFunnel:
    @pytest.mark.parametrize("order", [
        ["photo_uploaded", "tryon_initiated"],
        ["tryon_initiated", "photo_uploaded"],
    ])
    def test_upload_rate_independent_of_order(self, analytics, order):
        for name in order:
            analytics.record_event(name)
        analytics.record_event("tryon_initiated")

        funnel = analytics.funnel()
        assert funnel["stages"]["tryon_initiated"] == 2
        assert funnel["stages"]["photo_uploaded"] == 1
        assert funnel["uploadRate"] == 0.5

    def test_ratios_are_bounded(self, analytics):
        analytics.record_event("add_to_cart")
        analytics.record_event("purchase")
        analytics.record_event("purchase")

        funnel = analytics.funnel()
        assert funnel["purchaseRate"] == 1.0
        assert funnel["cartRate"] == 0.0
        assert funnel["uploadRate"] == 0.0

    def test_custom_events_do_not_touch_funnel(self, analytics):
        analytics.record_event("size_guide_opened")
        analytics.record_event("size_guide_opened")

        assert analytics.event_count("size_guide_opened") == 2
        assert all(count == 0 for count in analytics.funnel()["stages"].values())
        assert analytics.summary()["customCounters"] == {"size_guide_opened": 2}

    def test_empty_event_name_rejected(self, analytics):
        with pytest.raises(ValueError):
            analytics.record_event("  ")

    def test_revenue_accumulates(self, analytics):
        analytics.record_event("purchase", {"revenue": "49.90", "customer_id": "c1"})
        analytics.record_event("purchase", {"revenue": 10})
        analytics.record_event("purchase", {"revenue": "-5"})

        summary = analytics.summary()
        assert summary["totalRevenue"] == 59.9
        assert summary["dailyStats"][-1]["revenue"] == 59.9

    def test_completion_counted_once_per_job(self, analytics):
        assert analytics.record_completion("job_1", "c1") is True
        assert analytics.record_completion("job_1", "c1") is False
        assert analytics.event_count("result_generated") == 1
        assert analytics.event_count("result_viewed") == 1


class TestPersistence:
    def test_reload_restores_state(self, tmp_path):
        data_dir = str(tmp_path / "a")
        first = AnalyticsRecorder(data_dir=data_dir)
        first.record_call(_call("c1"))
        first.record_call(_call("c2"))
        first.record_event("photo_uploaded")
        first.record_event("wishlist_add")
        first.record_event("purchase", {"revenue": "12.00"})

        second = AnalyticsRecorder(data_dir=data_dir)
        summary = second.summary()
        assert summary["totalCalls"] == 2
        assert summary["eventCounts"]["photo_uploaded"] == 1
        assert summary["customCounters"] == {"wishlist_add": 1}
        assert summary["totalRevenue"] == 12.0
        assert len(summary["recentCalls"]) == 2

        # customers come back as a set: re-adding a known customer is a no-op
        today = datetime.now(timezone.utc).date().isoformat()
        second.record_call(_call("c1"))
        assert second.daily_aggregates()[today].customers == {"c1", "c2"}

    def test_snapshot_is_plain_json(self, analytics):
        analytics.record_call(_call("c1"))
        data = json.loads(analytics.snapshot_path.read_text())
        today = datetime.now(timezone.utc).date().isoformat()
        assert data["daily"][today]["customers"] == ["c1"]

    def test_rebuild_matches_incremental(self, analytics):
        yesterday = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        analytics.record_call(_call("c1", timestamp=yesterday))
        analytics.record_call(_call("c2", CallOutcome.ERROR))
        analytics.record_call(_call("c1"))
        analytics.record_event("purchase", {"revenue": "5.00"})
        before = analytics.daily_aggregates()

        replayed = analytics.rebuild_daily_aggregates()

        assert replayed == 3
        after = analytics.daily_aggregates()
        assert {k: v.to_dict() for k, v in after.items()} == {k: v.to_dict() for k, v in before.items()}
        assert analytics.summary()["totalRevenue"] == 5.0

    def test_corrupt_snapshot_falls_back_to_log(self, tmp_path):
        data_dir = str(tmp_path / "b")
        first = AnalyticsRecorder(data_dir=data_dir)
        first.record_call(_call("c1"))
        first.snapshot_path.write_text("{not json")

        second = AnalyticsRecorder(data_dir=data_dir)
        assert second.summary()["totalCalls"] == 1

    def test_reset_clears_everything(self, analytics):
        analytics.record_call(_call("c1"))
        analytics.record_event("photo_uploaded")
        analytics.record_completion("job_1")

        analytics.reset()

        summary = analytics.summary()
        assert summary["totalCalls"] == 0
        assert summary["eventCounts"]["photo_uploaded"] == 0
        assert not analytics.log_path.exists()
        assert analytics.record_completion("job_1") is True

    def test_unchanged_recorder_does_not_overwrite_snapshot(self, tmp_path):
        data_dir = str(tmp_path / "shared")
        server = AnalyticsRecorder(data_dir=data_dir)
        server.record_call(_call("c1"))

        worker = AnalyticsRecorder(data_dir=data_dir)
        server.record_call(_call("c2"))
        worker.flush()

        assert AnalyticsRecorder(data_dir=data_dir).summary()["totalCalls"] == 2

    def test_flush_without_changes_writes_nothing(self, analytics):
        analytics.flush()
        assert not analytics.snapshot_path.exists()


class TestConcurrentRebuild:
    def test_rebuild_during_recording_never_double_counts(self, analytics):
        writers, per_writer = 4, 25
        done = threading.Event()

        def record(worker):
            for i in range(per_writer):
                analytics.record_call(_call(f"c{worker}-{i % 3}"))

        def rebuild():
            while not done.is_set():
                analytics.rebuild_daily_aggregates()

        rebuilder = threading.Thread(target=rebuild)
        rebuilder.start()
        threads = [threading.Thread(target=record, args=(w,)) for w in range(writers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        done.set()
        rebuilder.join()

        incremental = analytics.daily_aggregates()
        assert analytics.summary()["totalCalls"] == writers * per_writer
        analytics.rebuild_daily_aggregates()
        assert {k: v.to_dict() for k, v in analytics.daily_aggregates().items()} == \
            {k: v.to_dict() for k, v in incremental.items()}
