"""
test_service.py — Tests for configuration, the service facade and the
process entry points (CLI operations, daemon loop, health server).
"""

import argparse
import json
import logging
import sys
import threading
import time
import urllib.error
import urllib.request
from http.server import HTTPServer
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import REPO_ROOT, T0, FixedClock, RecordingChannel, StubProvider
from report_processor.config import DEFAULT_CONFIG, load_config
from report_processor.distributor import DeliveryDispatcher
from report_processor.errors import ValidationError
from report_processor.service import ReportService

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestConfig:

    def test_defaults_when_file_missing(self, tmp_path):
        cfg = load_config(tmp_path / "absent.yaml", env={})
        assert cfg["processor"]["check_interval_minutes"] == 15
        assert cfg["processor"]["report_timeout_seconds"] == 600
        assert cfg["cleanup"]["max_age_hours"] == 72
        assert cfg is not DEFAULT_CONFIG

    def test_repository_config_loads(self):
        cfg = load_config(REPO_ROOT / "config.yaml", env={})
        assert cfg["project"]["company_name"] == "Northwind Hospitality Group"
        assert cfg["processor"]["formats"] == ["pdf", "xlsx"]
        assert set(cfg["delivery"]) == {"email_subject", "slack_username", "slack_icon_emoji",
                                        "public_base_url", "request_timeout_seconds",
                                        "max_attempts"}

    def test_yaml_merges_over_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("processor:\n  check_interval_minutes: 5\n")
        cfg = load_config(path, env={})
        assert cfg["processor"]["check_interval_minutes"] == 5
        assert cfg["processor"]["report_timeout_seconds"] == 600

    def test_env_overrides(self, tmp_path):
        cfg = load_config(None, env={"ENABLE_REPORT_PROCESSING": "false",
                                     "REPORTS_OUTPUT_DIR": str(tmp_path)})
        assert cfg["processor"]["enabled"] is False
        assert cfg["paths"]["output_dir"] == str(tmp_path)

    def test_cleanup_age_must_exceed_timeout(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("processor:\n  report_timeout_seconds: 7200\ncleanup:\n  max_age_hours: 1\n")
        with pytest.raises(ValidationError):
            load_config(path, env={})

    @pytest.mark.parametrize("snippet", [
        "processor:\n  check_interval_minutes: 0\n",
        "processor:\n  formats: [pdf, docx]\n",
        "storage:\n  backend: postgres\n",
        "- not\n- a mapping\n",
        "processor: [unclosed\n",
    ])
    def test_invalid_values_rejected(self, tmp_path, snippet):
        path = tmp_path / "config.yaml"
        path.write_text(snippet)
        with pytest.raises(ValidationError):
            load_config(path, env={})


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

@pytest.fixture
def cfg(tmp_path):
    cfg = load_config(None, env={})
    cfg["storage"]["backend"] = "memory"
    cfg["paths"]["output_dir"] = str(tmp_path / "reports")
    cfg["paths"]["templates_file"] = str(REPO_ROOT / "templates" / "report_templates.yaml")
    cfg["project"]["company_name"] = "Northwind"
    cfg["report"]["chart_dpi"] = 50
    return cfg


@pytest.fixture
def service(cfg):
    provider = StubProvider({"revenue_summary": {"totalRevenue": 1000},
                             "mrr_arr": {"totalMrr": 100, "activeSubscriptions": 2},
                             "churn_metrics": {"churnRate": 0.02}})
    svc = ReportService(cfg, provider=provider,
                        dispatcher=DeliveryDispatcher({"email": RecordingChannel()}),
                        clock=FixedClock(T0))
    yield svc
    svc.shutdown()


class TestReportService:

    def test_initialize_seeds_and_starts(self, service):
        service.initialize()
        assert service.processor.is_running
        assert len(service.list_templates()) == 3
        health = service.health()
        assert health["status"] == "healthy"
        assert health["initialized"] is True
        assert health["memory"]["max_rss_mb"] > 0

    def test_unhealthy_before_initialize(self, service):
        assert service.health()["status"] == "unhealthy"

    def test_disabled_service_is_healthy_without_scheduler(self, cfg):
        cfg["processor"]["enabled"] = False
        svc = ReportService(cfg, provider=StubProvider(),
                            dispatcher=DeliveryDispatcher({}), clock=FixedClock(T0))
        svc.initialize()
        assert not svc.processor.is_running
        assert svc.health()["status"] == "healthy"

    def test_restart(self, service):
        service.initialize()
        status = service.restart()
        assert status["is_running"] is True

    def test_shutdown(self, service):
        service.initialize()
        service.shutdown()
        assert not service.processor.is_running
        assert service.health()["status"] == "unhealthy"

    def test_add_schedule_by_name_and_process(self, service):
        service.seed_templates()
        report = service.add_schedule("Executive Summary", "Board weekly", "weekly",
                                      "email", ["board@example.com"])
        assert report.next_run_date > T0

        stats = service.process_report(report.id)

        assert stats.successful == 1
        metrics = service.metrics()
        assert metrics["total_reports"] == 1
        assert metrics["successful"] == 1
        assert metrics["processed_today"] == 1
        assert service.status()["total_scheduled_reports"] == 1

    def test_add_schedule_unknown_template(self, service):
        with pytest.raises(ValidationError):
            service.add_schedule("Nope", "x", "weekly", "email", ["a@example.com"])

    def test_render_chart_from_dict(self, service):
        png = service.render_chart({"type": "bar", "labels": ["a", "b"],
                                    "datasets": [{"label": "x", "data": [1, 2]}]})
        assert png.startswith(PNG_MAGIC)

    def test_render_chart_requires_type(self, service):
        with pytest.raises(ValidationError):
            service.render_chart({"labels": []})

    def test_cleanup_on_empty_output(self, service):
        assert service.cleanup() == 0

    def test_yaml_backend_persists(self, cfg, tmp_path):
        cfg["storage"]["backend"] = "yaml"
        cfg["paths"]["data_dir"] = str(tmp_path / "data")
        svc = ReportService(cfg, provider=StubProvider(),
                            dispatcher=DeliveryDispatcher({}), clock=FixedClock(T0))
        svc.seed_templates()
        svc.add_schedule("Revenue Analysis", "Quarterly", "quarterly", "email", ["cfo@example.com"])

        again = ReportService(cfg, provider=StubProvider(),
                              dispatcher=DeliveryDispatcher({}), clock=FixedClock(T0))
        assert len(again.list_templates()) == 3
        assert [r.name for r in again.schedules.all()] == ["Quarterly"]


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def _args(**overrides):
    values = dict(status=False, process_now=False, process_report=None, metrics=False,
                  cleanup=False, list_templates=False, add_schedule=None, template=None,
                  frequency="weekly", delivery_method="email", recipients=[])
    values.update(overrides)
    return argparse.Namespace(**values)


class TestCli:

    def test_list_and_add(self, service, capsys):
        from main import run_operations

        logger = logging.getLogger("test")
        assert run_operations(_args(list_templates=True), service, logger) == 0
        assert "Executive Summary" in capsys.readouterr().out

        code = run_operations(_args(add_schedule="Ops weekly", template="Customer Health Report",
                                    recipients=["ops@example.com"]), service, logger)
        assert code == 0
        assert json.loads(capsys.readouterr().out)["name"] == "Ops weekly"

    def test_add_requires_template(self, service):
        from main import run_operations

        assert run_operations(_args(add_schedule="x"), service, logging.getLogger("test")) == 1

    def test_unknown_report_id_fails(self, service):
        from main import run_operations

        code = run_operations(_args(process_report="missing"), service, logging.getLogger("test"))
        assert code == 1

    def test_process_now_and_metrics(self, service, capsys):
        from main import run_operations

        code = run_operations(_args(process_now=True, metrics=True), service,
                              logging.getLogger("test"))
        assert code == 0
        assert '"total_processed": 0' in capsys.readouterr().out


class TestDaemon:

    def test_run_daemon_stops_on_event(self, service):
        from scheduler import run_daemon

        stop = threading.Event()
        worker = threading.Thread(target=run_daemon, args=(service, stop))
        worker.start()
        try:
            for _ in range(50):
                if service.initialized:
                    break
                time.sleep(0.1)
            assert service.processor.is_running
        finally:
            stop.set()
            worker.join(10)
        assert not service.processor.is_running


class TestHealthServer:

    def _serve(self, service):
        from entrypoint import make_handler

        server = HTTPServer(("127.0.0.1", 0), make_handler(service))
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        return server, f"http://127.0.0.1:{server.server_address[1]}"

    def test_health_and_status(self, service):
        service.initialize()
        server, base = self._serve(service)
        try:
            with urllib.request.urlopen(f"{base}/health") as resp:
                assert resp.status == 200
                assert json.loads(resp.read())["status"] == "healthy"
            with urllib.request.urlopen(f"{base}/status") as resp:
                assert "total_scheduled_reports" in json.loads(resp.read())
        finally:
            server.shutdown()
            server.server_close()

    def test_unhealthy_is_503(self, service):
        server, base = self._serve(service)
        try:
            with pytest.raises(urllib.error.HTTPError) as info:
                urllib.request.urlopen(f"{base}/health")
            assert info.value.code == 503
        finally:
            server.shutdown()
            server.server_close()
