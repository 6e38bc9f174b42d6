"""
history.py — Append-only history log.

One `ReportHistory` record per generation attempt, from every entry point.
A failing store must never take a processing cycle down with it, so write
errors are logged and swallowed here; the processor's counters still
reflect the real outcome.
"""

import logging
from datetime import datetime, timedelta

from report_processor.models import ReportHistory
from report_processor.store import RecordStore

logger = logging.getLogger(__name__)


class HistoryLog:
    def __init__(self, store: RecordStore):
        self.store = store

    def record(self, entry: ReportHistory) -> bool:
        """Append `entry`. Returns False when the store rejected the write."""
        try:
            self.store.create(entry)
        except Exception as exc:
            logger.error("Could not write history for %s (%s): %s",
                         entry.report_name, entry.status, exc)
            return False
        logger.debug("History recorded: %s %s", entry.report_name, entry.status)
        return True

    def records_since(self, since: datetime) -> list[ReportHistory]:
        records = self.store.find_all(lambda h: h.generated_at >= since)
        return sorted(records, key=lambda h: h.generated_at)

    def for_schedule(self, scheduled_report_id: str) -> list[ReportHistory]:
        records = self.store.find_all(lambda h: h.scheduled_report_id == scheduled_report_id)
        return sorted(records, key=lambda h: h.generated_at)

    def daily_metrics(self, now: datetime) -> dict:
        """Totals, success rate and average generation time since midnight."""
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        records = self.records_since(midnight)
        records = [r for r in records if r.generated_at < midnight + timedelta(days=1)]
        completed = [r for r in records if r.status == "completed"]
        failed = [r for r in records if r.status == "failed"]
        total = len(records)
        return {
            "date": midnight.date().isoformat(),
            "total_reports": total,
            "successful": len(completed),
            "failed": len(failed),
            "delivery_failures": sum(1 for r in failed if r.failure_kind == "delivery"),
            "timeouts": sum(1 for r in failed if r.failure_kind == "timeout"),
            "success_rate": round(len(completed) / total * 100, 1) if total else 0.0,
            "average_generation_time_ms": (
                round(sum(r.generation_time_ms for r in records) / total) if total else 0
            ),
        }
