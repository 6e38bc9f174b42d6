"""
service.py — Report processing service.

`ReportService` is built once at startup and handed to every consumer
(CLI, daemon, health server). It wires the stores, assembler, renderer,
dispatcher and processor together and exposes the operational surface:

    status / process_now / process_report / health / restart / metrics
    render_chart / cleanup / initialize / shutdown
"""

import logging
import resource
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from report_processor.assembler import DocumentAssembler, MetricProvider
from report_processor.charts import render_validated_chart
from report_processor.distributor import DeliveryDispatcher, build_dispatcher
from report_processor.document import ChartSpec
from report_processor.errors import ValidationError
from report_processor.history import HistoryLog
from report_processor.models import (
    ProcessingStats,
    ReportHistory,
    ReportTemplate,
    ScheduledReport,
    utcnow,
)
from report_processor.processor import ReportProcessor
from report_processor.renderer import ReportRenderer
from report_processor.simulated_provider import SimulatedMetricProvider
from report_processor.store import (
    InMemoryRecordStore,
    RecordStore,
    ScheduleRepository,
    TemplateRepository,
    YamlRecordStore,
    load_templates,
)

logger = logging.getLogger(__name__)


def _build_stores(cfg: dict[str, Any]) -> tuple[RecordStore, RecordStore, RecordStore]:
    if cfg["storage"]["backend"] == "memory":
        return InMemoryRecordStore(), InMemoryRecordStore(), InMemoryRecordStore()
    data_dir = Path(cfg["paths"]["data_dir"])
    return (
        YamlRecordStore(data_dir / "report_templates.yaml", ReportTemplate),
        YamlRecordStore(data_dir / "scheduled_reports.yaml", ScheduledReport),
        YamlRecordStore(data_dir / "report_history.yaml", ReportHistory),
    )


def _max_rss_mb() -> float:
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports KiB, macOS bytes
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return round(rss / divisor, 1)


class ReportService:
    """Owns one ReportProcessor and everything it depends on."""

    def __init__(
        self,
        cfg: dict[str, Any],
        provider: MetricProvider | None = None,
        stores: tuple[RecordStore, RecordStore, RecordStore] | None = None,
        dispatcher: DeliveryDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cfg = cfg
        self.clock = clock
        template_store, schedule_store, history_store = stores or _build_stores(cfg)
        self.templates = TemplateRepository(template_store)
        self.schedules = ScheduleRepository(schedule_store)
        self.history = HistoryLog(history_store)

        report_cfg = cfg["report"]
        proc_cfg = cfg["processor"]
        cleanup_cfg = cfg["cleanup"]

        self.provider = provider or SimulatedMetricProvider(cfg.get("provider"))
        self.assembler = DocumentAssembler(
            self.provider,
            company_name=cfg["project"].get("company_name", ""),
            footer=report_cfg.get("footer", ""),
            include_charts=proc_cfg.get("include_charts", True),
        )
        self.renderer = ReportRenderer(
            cfg["paths"]["output_dir"],
            formats=proc_cfg["formats"],
            brand=report_cfg.get("brand"),
            branding=report_cfg.get("branding_enabled", True),
            chart_dpi=report_cfg.get("chart_dpi", 150),
        )
        self.dispatcher = dispatcher or build_dispatcher(cfg)
        self.processor = ReportProcessor(
            self.schedules,
            self.templates,
            self.history,
            self.assembler,
            self.renderer,
            self.dispatcher,
            check_interval_minutes=proc_cfg["check_interval_minutes"],
            report_timeout_seconds=proc_cfg["report_timeout_seconds"],
            cleanup_enabled=cleanup_cfg.get("enabled", True),
            cleanup_max_age_hours=cleanup_cfg["max_age_hours"],
            cleanup_interval_minutes=cleanup_cfg.get("interval_minutes", 60),
            timezone=cfg["project"].get("timezone", "UTC"),
            clock=clock,
        )
        self.initialized = False
        self._started_at = time.monotonic()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return bool(self.cfg["processor"].get("enabled", True))

    def seed_templates(self) -> int:
        path = Path(self.cfg["paths"]["templates_file"])
        if not path.exists():
            logger.warning("Default templates file %s not found", path)
            return 0
        return self.templates.seed_defaults(load_templates(path))

    def initialize(self) -> None:
        """Seed defaults and start the periodic processor when enabled."""
        if self.initialized:
            logger.warning("Report service already initialized")
            return
        self.seed_templates()
        if self.enabled:
            self.processor.start()
        else:
            logger.info("Report processing disabled via configuration")
        self.initialized = True
        logger.info("Report service initialized")

    def shutdown(self) -> None:
        if self.processor.is_running:
            self.processor.stop()
        self.initialized = False
        logger.info("Report service shut down")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def status(self) -> dict:
        return self.processor.get_detailed_status()

    def process_now(self) -> ProcessingStats:
        return self.processor.process_now()

    def process_report(self, report_id: str) -> ProcessingStats:
        return self.processor.process_specific_report(report_id)

    def health(self) -> dict:
        running = self.processor.is_running
        healthy = self.initialized and (running or not self.enabled)
        return {
            "status": "healthy" if healthy else "unhealthy",
            "is_running": running,
            "initialized": self.initialized,
            "enabled": self.enabled,
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
            "memory": {"max_rss_mb": _max_rss_mb()},
            "timestamp": self.clock().isoformat(),
        }

    def restart(self) -> dict:
        """Stop then start the periodic driver."""
        if self.processor.is_running:
            self.processor.stop()
        self.processor.start()
        logger.info("Report processor restarted")
        return self.processor.get_status()

    def metrics(self) -> dict:
        daily = self.history.daily_metrics(self.clock())
        status = self.processor.get_status()
        daily.update({
            "processed_today": status["processed_today"],
            "errors_today": status["errors_today"],
            "delivery_errors_today": status["delivery_errors_today"],
        })
        return daily

    def render_chart(self, spec: ChartSpec | dict) -> bytes:
        """Rasterise a chart for direct return to a caller (validated PNG)."""
        if isinstance(spec, dict):
            try:
                spec = ChartSpec(
                    type=spec["type"],
                    labels=list(spec.get("labels", [])),
                    datasets=list(spec.get("datasets", [])),
                    options=dict(spec.get("options", {})),
                )
            except KeyError as exc:
                raise ValidationError("Chart spec needs a 'type'") from exc
        return render_validated_chart(spec, dpi=self.cfg["report"].get("chart_dpi", 150),
                                      brand=self.cfg["report"].get("brand"))

    def cleanup(self) -> int:
        return self.processor.cleanup_output()

    # ------------------------------------------------------------------
    # Operator helpers
    # ------------------------------------------------------------------

    def list_templates(self) -> list[ReportTemplate]:
        return self.templates.all()

    def add_schedule(
        self,
        template: str,
        name: str,
        frequency: str,
        delivery_method: str,
        recipients: list[str],
        filters: dict | None = None,
    ) -> ScheduledReport:
        """Create a schedule for a template given by id or name."""
        found = self.templates.get(template) or self.templates.find_by_name(template)
        if found is None:
            raise ValidationError(f"Template not found: {template}")
        report = ScheduledReport(
            template_id=found.id,
            name=name,
            frequency=frequency,
            delivery_method=delivery_method,
            recipients=recipients,
            filters=filters or {},
            created_at=self.clock(),
        )
        self.schedules.add(report)
        logger.info("Scheduled %s (%s, %s) next run %s", report.name, frequency,
                    delivery_method, report.next_run_date.isoformat())
        return report
