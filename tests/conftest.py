"""
conftest.py — Shared fixtures: stub metric provider, recording delivery
channel, fixed clock and a processor factory wired to in-memory stores.
"""

import copy
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from report_processor.assembler import DocumentAssembler
from report_processor.distributor import DeliveryChannel, DeliveryDispatcher, DeliveryResult
from report_processor.history import HistoryLog
from report_processor.models import ReportTemplate, ScheduledReport
from report_processor.processor import ReportProcessor
from report_processor.renderer import ReportRenderer
from report_processor.store import InMemoryRecordStore, ScheduleRepository, TemplateRepository

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
REPO_ROOT = Path(__file__).parent.parent


class FixedClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StubProvider:
    """Returns canned responses; an Exception value is raised, a callable is called."""

    def __init__(self, responses: dict | None = None):
        self.responses = responses or {}
        self.calls = []

    def get_metric(self, name, start, end, **params):
        self.calls.append((name, start, end, params))
        response = self.responses.get(name)
        if response is None:
            raise KeyError(f"no stub for {name}")
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(name, start, end, **params)
        return copy.deepcopy(response)


class RecordingChannel(DeliveryChannel):
    name = "email"

    def __init__(self, fail_for=()):
        self.sends = []
        self.fail_for = set(fail_for)

    def send(self, report, document, artifacts):
        self.sends.append((report, document, list(artifacts)))
        return DeliveryResult(
            self.name,
            delivered=[r for r in report.recipients if r not in self.fail_for],
            failed={r: "mailbox unavailable" for r in report.recipients if r in self.fail_for},
        )


class FailingStore(InMemoryRecordStore):
    def create(self, record):
        raise OSError("disk full")


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def provider():
    return StubProvider({"revenue_summary": {"totalRevenue": 1000}})


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def revenue_template():
    return ReportTemplate(
        name="Revenue Pulse",
        category="custom",
        config={"metrics": ["revenue_summary"]},
    )


@pytest.fixture
def daily_report(revenue_template):
    return ScheduledReport(
        template_id=revenue_template.id,
        name="Daily revenue pulse",
        frequency="daily",
        delivery_method="email",
        recipients=["cfo@example.com"],
        next_run_date=T0,
        created_at=T0 - timedelta(days=1),
    )


@pytest.fixture
def make_processor(tmp_path, clock, channel):
    """Factory: ReportProcessor over in-memory stores and the recording channel."""

    def _make(provider, templates=(), schedules=(), history_store=None, **kwargs):
        return ReportProcessor(
            ScheduleRepository(InMemoryRecordStore(list(schedules))),
            TemplateRepository(InMemoryRecordStore(list(templates))),
            HistoryLog(history_store if history_store is not None else InMemoryRecordStore()),
            DocumentAssembler(provider),
            ReportRenderer(tmp_path / "reports"),
            DeliveryDispatcher({"email": channel}),
            clock=clock,
            **kwargs,
        )

    return _make
