"""
scheduler.py — Report Processor Daemon.

Starts the report service and keeps the process alive while the
processor's background jobs poll for due reports (every 15 minutes by
default), reset the daily counters at midnight and sweep expired output.

Usage:
    python scheduler.py              # Start daemon (blocking)
    python scheduler.py --run-now    # One immediate cycle, then exit
    python scheduler.py --config custom.yaml
"""

import argparse
import logging
import logging.handlers
import signal
import sys
import threading
from pathlib import Path

from report_processor.config import load_config
from report_processor.errors import ConcurrencyError, ReportProcessorError

logger = logging.getLogger(__name__)


def _configure_logging(log_dir: str) -> None:
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)-35s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh = logging.handlers.RotatingFileHandler(
        Path(log_dir) / "scheduler.log",
        maxBytes=5 * 1024 * 1024, backupCount=14, encoding="utf-8",
    )
    fh.setFormatter(fmt)
    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(fmt)
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.addHandler(fh)
    root.addHandler(sh)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("matplotlib").setLevel(logging.WARNING)


def build_service(config_path: str = "config.yaml"):
    """Load configuration, set up logging and construct the ReportService."""
    cfg = load_config(config_path)
    _configure_logging(cfg["paths"]["log_dir"])

    from report_processor.service import ReportService

    return ReportService(cfg)


def run_daemon(service, stop_event: threading.Event | None = None) -> None:
    """Initialize `service` and block until SIGINT/SIGTERM or `stop_event`.

    Must be called from the main thread when it installs signal handlers.
    """
    stop_event = stop_event or threading.Event()

    def _shutdown(sig, frame):
        logger.info("Shutdown signal -- stopping report processor")
        stop_event.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

    service.initialize()
    status = service.processor.get_status()
    logger.info(
        "Daemon started -- running=%s, interval %s min, next check %s",
        status["is_running"], status["check_interval_minutes"], status["next_check"],
    )
    try:
        while not stop_event.wait(timeout=1.0):
            pass
    finally:
        service.shutdown()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="scheduler",
        description="Scheduled report processor daemon.",
    )
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--run-now", action="store_true",
                        help="Run one processing cycle immediately then exit")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    try:
        service = build_service(args.config)
    except ReportProcessorError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.run_now:
        logger.info("--run-now: executing one processing cycle")
        service.seed_templates()
        try:
            stats = service.process_now()
        except ConcurrencyError as exc:
            logger.error("%s", exc)
            sys.exit(1)
        logger.info(
            "Immediate run complete -- %d processed, %d failed",
            stats.total_processed, stats.failed,
        )
        sys.exit(1 if stats.failed else 0)

    run_daemon(service)


if __name__ == "__main__":
    main()
