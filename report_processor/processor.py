"""
processor.py — Scheduled report processor.

Drives the pipeline on a fixed interval:

    tick ──► find_due(now) ──► for each entry, serially:
                 assemble ─► render (pdf, xlsx) ─► dispatch
                 success: last_run = now, next_run advanced, history "completed"
                 failure: next_run untouched (retried next tick), history "failed"

The cycle guard is a non-blocking `threading.Lock`: the periodic tick
skips while a cycle runs and `process_now()` raises `ConcurrencyError`
instead of queueing. Every report runs under an end-to-end timeout so a
stuck provider cannot hold the guard forever. A timed-out worker stops
at its next checkpoint, before rendering or delivery, and holds its
entry's claim until it has actually returned.

Background jobs (APScheduler BackgroundScheduler):
    report_processor_cycle   every `check_interval_minutes`
    report_counters_reset    00:00 daily
    report_output_cleanup    every `cleanup_interval_minutes` (optional)
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from report_processor.assembler import DocumentAssembler
from report_processor.distributor import DeliveryDispatcher
from report_processor.document import Document
from report_processor.errors import (
    ConcurrencyError,
    DeliveryError,
    ReportTimeoutError,
    ValidationError,
)
from report_processor.history import HistoryLog
from report_processor.models import (
    ProcessingStats,
    ReportHistory,
    ScheduledReport,
    compute_next_run,
    utcnow,
)
from report_processor.output_paths import cleanup_old_files
from report_processor.renderer import Artifact, ReportRenderer
from report_processor.store import ScheduleRepository, TemplateRepository

logger = logging.getLogger(__name__)

CYCLE_JOB_ID = "report_processor_cycle"
RESET_JOB_ID = "report_counters_reset"
CLEANUP_JOB_ID = "report_output_cleanup"

BUSY_MESSAGE = "Report processing already in progress. Please wait for current processing to complete."


@dataclass
class _Attempt:
    """What one report produced before it finished or failed."""
    document: Document | None = None
    artifacts: list[Artifact] = field(default_factory=list)
    cancelled: threading.Event = field(default_factory=threading.Event)
    detached: bool = False


@dataclass
class _Outcome:
    status: str
    failure_kind: str | None = None
    error: str | None = None


class ReportProcessor:
    """Periodic driver for scheduled report generation and delivery."""

    def __init__(
        self,
        schedules: ScheduleRepository,
        templates: TemplateRepository,
        history: HistoryLog,
        assembler: DocumentAssembler,
        renderer: ReportRenderer,
        dispatcher: DeliveryDispatcher,
        check_interval_minutes: float = 15,
        report_timeout_seconds: float = 600,
        cleanup_enabled: bool = True,
        cleanup_max_age_hours: float = 72,
        cleanup_interval_minutes: float = 60,
        timezone: str = "UTC",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.schedules = schedules
        self.templates = templates
        self.history = history
        self.assembler = assembler
        self.renderer = renderer
        self.dispatcher = dispatcher
        self.check_interval_minutes = check_interval_minutes
        self.report_timeout_seconds = report_timeout_seconds
        self.cleanup_enabled = cleanup_enabled
        self.cleanup_max_age_hours = cleanup_max_age_hours
        self.cleanup_interval_minutes = cleanup_interval_minutes
        self.timezone = timezone
        self.clock = clock

        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._scheduler: BackgroundScheduler | None = None

        self.last_check: datetime | None = None
        self._counter_date = self.clock().date()
        self.processed_today = 0
        self.errors_today = 0
        self.delivery_errors_today = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def is_processing(self) -> bool:
        return self._cycle_lock.locked()

    def start(self) -> None:
        """Schedule the periodic jobs. A second call is a no-op."""
        if self.is_running:
            logger.warning("Report processor is already running")
            return

        scheduler = BackgroundScheduler(timezone=self.timezone)
        scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(minutes=self.check_interval_minutes, timezone=self.timezone),
            id=CYCLE_JOB_ID,
            name="Scheduled report processing",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.reset_daily_counters,
            trigger=CronTrigger(hour=0, minute=0, timezone=self.timezone),
            id=RESET_JOB_ID,
            name="Daily counter reset",
            replace_existing=True,
        )
        if self.cleanup_enabled:
            scheduler.add_job(
                self.cleanup_output,
                trigger=IntervalTrigger(minutes=self.cleanup_interval_minutes, timezone=self.timezone),
                id=CLEANUP_JOB_ID,
                name="Report output cleanup",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Report processor started -- checking every %s minute(s), timeout %ss per report",
            self.check_interval_minutes, self.report_timeout_seconds,
        )

    def stop(self) -> None:
        """Stop the periodic jobs; a cycle already running is left to finish."""
        if not self.is_running:
            logger.warning("Report processor is not running")
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Report processor stopped")

    @property
    def next_check(self) -> datetime | None:
        if not self.is_running:
            return None
        job = self._scheduler.get_job(CYCLE_JOB_ID)
        return job.next_run_time if job else None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _tick(self) -> None:
        try:
            stats = self.process_scheduled_reports()
        except ConcurrencyError:
            logger.info("Previous processing cycle still running, skipping this tick")
            return
        except Exception as exc:
            logger.error("Processing cycle crashed: %s", exc, exc_info=True)
            return
        if stats.total_processed:
            logger.info(
                "Cycle complete -- %d processed, %d succeeded, %d failed (%d delivery) in %dms",
                stats.total_processed, stats.successful, stats.failed,
                stats.delivery_failures, stats.processing_time_ms,
            )

    def process_scheduled_reports(self, trigger: str = "scheduled") -> ProcessingStats:
        """Run one cycle over every due report.

        Raises:
            ConcurrencyError: A cycle is already in progress.
        """
        if not self._cycle_lock.acquire(blocking=False):
            raise ConcurrencyError(BUSY_MESSAGE)
        started = time.monotonic()
        stats = ProcessingStats()
        try:
            now = self.clock()
            self.last_check = now
            due = self.schedules.find_due(now)
            if due:
                logger.info("Found %d due report(s)", len(due))
            for report in due:
                if not self._claim(report.id):
                    logger.info("Skipping %s: already being processed", report.name)
                    continue
                # A forced run may have finished since find_due
                current = self.schedules.get(report.id)
                if current is None or not current.is_due(now):
                    self._release(report.id)
                    logger.info("Skipping %s: no longer due", report.name)
                    continue
                outcome = self._process_claimed(current, now, trigger)
                self._tally(stats, current, outcome)
        finally:
            stats.processing_time_ms = int((time.monotonic() - started) * 1000)
            self._cycle_lock.release()
        return stats

    def process_now(self) -> ProcessingStats:
        """Run one cycle immediately; fails fast if one is in progress."""
        logger.info("Manual processing cycle requested")
        return self.process_scheduled_reports(trigger="manual")

    def process_specific_report(self, report_id: str) -> ProcessingStats:
        """Force one entry regardless of `is_active` and `next_run_date`.

        Raises:
            ValidationError: Unknown id.
            ConcurrencyError: That entry is already being processed.
        """
        report = self.schedules.get(report_id)
        if report is None:
            raise ValidationError(f"Scheduled report not found: {report_id}")
        if not self._claim(report.id):
            raise ConcurrencyError(f"Scheduled report {report.name} is already being processed")
        started = time.monotonic()
        stats = ProcessingStats()
        logger.info("Forced processing of %s (%s)", report.name, report.id)
        outcome = self._process_claimed(report, self.clock(), "forced")
        self._tally(stats, report, outcome)
        stats.processing_time_ms = int((time.monotonic() - started) * 1000)
        return stats

    # ------------------------------------------------------------------
    # Per-report processing
    # ------------------------------------------------------------------

    def _claim(self, report_id: str) -> bool:
        with self._state_lock:
            if report_id in self._in_flight:
                return False
            self._in_flight.add(report_id)
            return True

    def _release(self, report_id: str) -> None:
        with self._state_lock:
            self._in_flight.discard(report_id)

    @staticmethod
    def _check_cancelled(report: ScheduledReport, attempt: _Attempt, stage: str) -> None:
        if attempt.cancelled.is_set():
            logger.warning("Report %s timed out, abandoning before %s", report.name, stage)
            raise ReportTimeoutError(f"Report timed out before {stage}")

    def _generate_and_deliver(self, report: ScheduledReport, now: datetime, attempt: _Attempt) -> None:
        template = self.templates.get(report.template_id)
        if template is None:
            raise ValidationError(f"Template not found: {report.template_id}")
        attempt.document = self.assembler.assemble(template, report.filters, now)
        self._check_cancelled(report, attempt, "rendering")
        attempt.artifacts = self.renderer.render(attempt.document, now)
        self._check_cancelled(report, attempt, "delivery")
        self.dispatcher.dispatch(report, attempt.document, attempt.artifacts)

    def _run_with_timeout(self, report: ScheduledReport, now: datetime, attempt: _Attempt) -> None:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"report-{report.id[:8]}")
        try:
            future = executor.submit(self._generate_and_deliver, report, now, attempt)
            try:
                future.result(timeout=self.report_timeout_seconds)
            except FutureTimeout as exc:
                # The worker stops at its next checkpoint and keeps the claim until then
                attempt.cancelled.set()
                if not future.cancel():
                    attempt.detached = True
                    future.add_done_callback(lambda _f: self._release(report.id))
                raise ReportTimeoutError(
                    f"Report exceeded the {self.report_timeout_seconds}s processing timeout"
                ) from exc
        finally:
            # A timed-out worker is abandoned; it cannot be interrupted
            executor.shutdown(wait=False)

    def _process_claimed(self, report: ScheduledReport, now: datetime, trigger: str) -> _Outcome:
        """Process an entry the caller has claimed, then give the claim back."""
        attempt = _Attempt()
        try:
            return self._process_one(report, now, trigger, attempt)
        finally:
            if not attempt.detached:
                self._release(report.id)

    def _process_one(self, report: ScheduledReport, now: datetime, trigger: str,
                     attempt: _Attempt) -> _Outcome:
        started = time.monotonic()
        try:
            self._run_with_timeout(report, now, attempt)
        except Exception as exc:
            outcome = _Outcome("failed", self._failure_kind(exc), str(exc) or type(exc).__name__)
            log = logger.warning if outcome.failure_kind == "delivery" else logger.error
            log("Report %s failed (%s): %s", report.name, outcome.failure_kind, outcome.error)
            if outcome.failure_kind == "validation":
                # Misconfiguration is not retried every tick; the next period tries again
                next_run = self._next_run(report, now)
                try:
                    self.schedules.skip_run(report.id, next_run)
                except Exception as store_exc:
                    logger.error("Could not postpone %s: %s", report.name, store_exc)
        else:
            outcome = _Outcome("completed")
            next_run = self._next_run(report, now)
            try:
                self.schedules.record_run(report.id, now, next_run)
            except Exception as exc:
                logger.error("Could not advance schedule for %s: %s", report.name, exc)
            logger.info("Report %s completed, next run %s", report.name, next_run.isoformat())

        artifact_paths = [str(a.path) for a in attempt.artifacts]
        pdf_paths = [str(a.path) for a in attempt.artifacts if a.format == "pdf"]
        self.history.record(ReportHistory(
            report_name=report.name,
            status=outcome.status,
            generation_time_ms=int((time.monotonic() - started) * 1000),
            template_id=report.template_id,
            scheduled_report_id=report.id,
            report_data=attempt.document.to_dict() if attempt.document else {},
            file_path=(pdf_paths or artifact_paths or [None])[0],
            artifact_paths=artifact_paths,
            error_message=outcome.error,
            failure_kind=outcome.failure_kind,
            trigger=trigger,
            generated_at=now,
        ))
        self._count(outcome)
        return outcome

    @staticmethod
    def _next_run(report: ScheduledReport, now: datetime) -> datetime:
        """One unit after `now`, never earlier than the current next run."""
        current = report.next_run_date or now
        return max(current, compute_next_run(report.frequency, now))

    @staticmethod
    def _failure_kind(exc: Exception) -> str:
        if isinstance(exc, ValidationError):
            return "validation"
        if isinstance(exc, ReportTimeoutError):
            return "timeout"
        if isinstance(exc, DeliveryError):
            return "delivery"
        return "generation"

    @staticmethod
    def _tally(stats: ProcessingStats, report: ScheduledReport, outcome: _Outcome) -> None:
        stats.total_processed += 1
        if outcome.status == "completed":
            stats.successful += 1
            return
        stats.failed += 1
        if outcome.failure_kind == "delivery":
            stats.delivery_failures += 1
        stats.errors.append(f"{report.name}: {outcome.error}")

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def _roll_counters(self) -> None:
        today = self.clock().date()
        with self._state_lock:
            if today != self._counter_date:
                self._counter_date = today
                self.processed_today = self.errors_today = self.delivery_errors_today = 0

    def _count(self, outcome: _Outcome) -> None:
        self._roll_counters()
        with self._state_lock:
            self.processed_today += 1
            if outcome.status == "failed":
                self.errors_today += 1
                if outcome.failure_kind == "delivery":
                    self.delivery_errors_today += 1

    def reset_daily_counters(self) -> None:
        with self._state_lock:
            self._counter_date = self.clock().date()
            self.processed_today = self.errors_today = self.delivery_errors_today = 0
        logger.info("Daily report counters reset")

    # ------------------------------------------------------------------
    # Maintenance and status
    # ------------------------------------------------------------------

    def cleanup_output(self) -> int:
        return cleanup_old_files(self.renderer.output_dir, self.cleanup_max_age_hours)

    def get_status(self) -> dict:
        self._roll_counters()
        next_check = self.next_check
        return {
            "is_running": self.is_running,
            "is_processing": self.is_processing,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "next_check": next_check.isoformat() if next_check else None,
            "check_interval_minutes": self.check_interval_minutes,
            "processed_today": self.processed_today,
            "errors_today": self.errors_today,
            "delivery_errors_today": self.delivery_errors_today,
        }

    def get_detailed_status(self) -> dict:
        now = self.clock()
        status = self.get_status()
        status.update({
            "total_scheduled_reports": self.schedules.count_active(),
            "due_reports": len(self.schedules.find_due(now)),
            "upcoming_reports": [
                {
                    "id": r.id,
                    "name": r.name,
                    "frequency": r.frequency,
                    "next_run_date": r.next_run_date.isoformat(),
                }
                for r in self.schedules.find_upcoming(now, limit=5)
            ],
        })
        return status
