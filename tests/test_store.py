"""
test_store.py — Unit tests for record stores and repositories.
"""

import sys
from datetime import timedelta
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import REPO_ROOT, T0
from report_processor.errors import ValidationError
from report_processor.models import ReportHistory, ReportTemplate, ScheduledReport
from report_processor.store import (
    InMemoryRecordStore,
    ScheduleRepository,
    TemplateRepository,
    YamlRecordStore,
    load_templates,
)


def _schedule(name, next_run, active=True, frequency="daily"):
    return ScheduledReport(
        template_id="t1", name=name, frequency=frequency, delivery_method="email",
        recipients=["ops@example.com"], next_run_date=next_run, is_active=active,
        created_at=T0 - timedelta(days=30),
    )


class TestInMemoryRecordStore:

    def test_create_and_find(self):
        store = InMemoryRecordStore()
        record = store.create(_schedule("a", T0))
        assert store.find(record.id) == record
        assert store.find("missing") is None

    def test_duplicate_id_rejected(self):
        report = _schedule("a", T0)
        store = InMemoryRecordStore([report])
        with pytest.raises(ValidationError):
            store.create(report)

    def test_returns_copies(self):
        report = _schedule("a", T0)
        store = InMemoryRecordStore([report])
        fetched = store.find(report.id)
        fetched.recipients.append("intruder@example.com")
        assert store.find(report.id).recipients == ["ops@example.com"]

    def test_update(self):
        report = _schedule("a", T0)
        store = InMemoryRecordStore([report])
        updated = store.update(report.id, last_run_date=T0)
        assert updated.last_run_date == T0
        assert store.find(report.id).last_run_date == T0

    def test_update_missing(self):
        with pytest.raises(ValidationError):
            InMemoryRecordStore().update("nope", is_active=False)


class TestYamlRecordStore:

    def test_schedules_survive_reload(self, tmp_path):
        path = tmp_path / "data" / "schedules.yaml"
        store = YamlRecordStore(path, ScheduledReport)
        report = store.create(_schedule("weekly board", T0, frequency="weekly"))
        store.update(report.id, last_run_date=T0, next_run_date=T0 + timedelta(days=7))

        reloaded = YamlRecordStore(path, ScheduledReport).find(report.id)
        assert reloaded.name == "weekly board"
        assert reloaded.last_run_date == T0
        assert reloaded.next_run_date == T0 + timedelta(days=7)
        assert not path.with_suffix(".yaml.tmp").exists()

    def test_history_survives_reload(self, tmp_path):
        path = tmp_path / "history.yaml"
        entry = ReportHistory(report_name="r", status="failed", generation_time_ms=12,
                              report_data={"sections": [{"title": "x"}]},
                              failure_kind="timeout", generated_at=T0)
        YamlRecordStore(path, ReportHistory).create(entry)

        raw = yaml.safe_load(path.read_text())
        assert raw[0]["generated_at"] == T0.isoformat()
        assert YamlRecordStore(path, ReportHistory).find(entry.id) == entry

    def test_templates_survive_reload(self, tmp_path):
        path = tmp_path / "templates.yaml"
        template = ReportTemplate(name="Ops", category="operational",
                                  config={"metrics": ["churn_metrics"], "cohort_months": 6})
        YamlRecordStore(path, ReportTemplate).create(template)
        assert YamlRecordStore(path, ReportTemplate).find(template.id) == template

    def test_rejects_non_list_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("just: a mapping\n")
        with pytest.raises(ValidationError):
            YamlRecordStore(path, ScheduledReport)


class TestScheduleRepository:

    def test_find_due_oldest_first(self):
        late = _schedule("late", T0 - timedelta(hours=1))
        early = _schedule("early", T0 - timedelta(days=2))
        future = _schedule("future", T0 + timedelta(hours=1))
        inactive = _schedule("inactive", T0 - timedelta(days=5), active=False)
        exact = _schedule("exact", T0)
        repo = ScheduleRepository(InMemoryRecordStore([late, early, future, inactive, exact]))

        assert [r.name for r in repo.find_due(T0)] == ["early", "late", "exact"]

    def test_find_upcoming_limit(self):
        reports = [_schedule(f"r{i}", T0 + timedelta(hours=i)) for i in range(1, 8)]
        repo = ScheduleRepository(InMemoryRecordStore(reports))
        upcoming = repo.find_upcoming(T0)
        assert [r.name for r in upcoming] == ["r1", "r2", "r3", "r4", "r5"]
        assert len(repo.find_upcoming(T0, limit=2)) == 2

    def test_count_active_and_record_run(self):
        a = _schedule("a", T0)
        repo = ScheduleRepository(InMemoryRecordStore([a, _schedule("b", T0, active=False)]))
        assert repo.count_active() == 1
        updated = repo.record_run(a.id, T0, T0 + timedelta(days=1))
        assert updated.last_run_date == T0
        assert repo.get(a.id).next_run_date == T0 + timedelta(days=1)


class TestTemplateRepository:

    def test_repository_templates_file_loads(self):
        templates = load_templates(REPO_ROOT / "templates" / "report_templates.yaml")
        assert [t.name for t in templates] == [
            "Executive Summary", "Revenue Analysis", "Customer Health Report",
        ]
        assert templates[1].config.forecast_months == 6

    def test_seed_defaults_only_when_empty(self):
        repo = TemplateRepository(InMemoryRecordStore())
        defaults = load_templates(REPO_ROOT / "templates" / "report_templates.yaml")
        assert repo.seed_defaults(defaults) == 3
        assert repo.seed_defaults(defaults) == 0
        assert repo.find_by_name("Revenue Analysis").category == "financial"
        assert repo.find_by_name("Nope") is None
        assert [t.name for t in repo.all()][0] == "Customer Health Report"
