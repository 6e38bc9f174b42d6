"""
test_history.py — Unit tests for the append-only history log.
"""

import sys
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import T0, FailingStore
from report_processor.history import HistoryLog
from report_processor.models import ReportHistory
from report_processor.store import InMemoryRecordStore


def _entry(status="completed", ms=100, kind=None, at=T0, schedule_id="s1"):
    return ReportHistory(report_name="Daily", status=status, generation_time_ms=ms,
                         failure_kind=kind, generated_at=at, scheduled_report_id=schedule_id)


class TestHistoryLog:

    def test_record_and_query(self):
        log = HistoryLog(InMemoryRecordStore())
        assert log.record(_entry(at=T0))
        assert log.record(_entry(at=T0 - timedelta(hours=1), schedule_id="s2"))
        assert [h.scheduled_report_id for h in log.records_since(T0 - timedelta(days=1))] == ["s2", "s1"]
        assert len(log.for_schedule("s1")) == 1

    def test_write_failure_is_swallowed(self):
        log = HistoryLog(FailingStore())
        assert log.record(_entry()) is False

    def test_daily_metrics(self):
        log = HistoryLog(InMemoryRecordStore())
        log.record(_entry(ms=100))
        log.record(_entry(ms=300))
        log.record(_entry("failed", ms=200, kind="delivery"))
        log.record(_entry("failed", ms=400, kind="timeout"))
        # yesterday's run is outside the window
        log.record(_entry(ms=9999, at=T0 - timedelta(days=1)))

        metrics = log.daily_metrics(T0)
        assert metrics == {
            "date": "2026-03-02",
            "total_reports": 4,
            "successful": 2,
            "failed": 2,
            "delivery_failures": 1,
            "timeouts": 1,
            "success_rate": 50.0,
            "average_generation_time_ms": 250,
        }

    def test_daily_metrics_empty(self):
        metrics = HistoryLog(InMemoryRecordStore()).daily_metrics(T0)
        assert metrics["total_reports"] == 0
        assert metrics["success_rate"] == 0.0
