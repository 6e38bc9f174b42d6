"""
main.py — Scheduled Report Processor — CLI Entry Point.

Operator interface to the report service: trigger cycles, force a single
schedule, inspect status and metrics, manage schedules and sweep old output.

Usage:
    python main.py --status                       # Detailed processor status
    python main.py --process-now                  # Run one cycle immediately
    python main.py --process-report <ID>          # Force one scheduled report
    python main.py --metrics                      # Today's totals
    python main.py --list-templates
    python main.py --add-schedule "Weekly exec" --template "Executive Summary" \\
                   --frequency weekly --delivery-method email --recipients cfo@example.com
    python main.py --cleanup --config custom.yaml --log-level DEBUG

Outputs (reports/):
    {template}_report_{timestamp}.pdf
    {template}_report_{timestamp}.xlsx
"""

import argparse
import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path

from report_processor.config import load_config
from report_processor.errors import ReportProcessorError


def _configure_logging(log_dir: str = "logs", level: str = "INFO") -> None:
    """Configure rotating file handler + stream handler.

    Args:
        log_dir: Directory for log files.
        level: Log level string.
    """
    effective_level = os.environ.get("LOG_LEVEL", level).upper()
    numeric = getattr(logging, effective_level, logging.INFO)

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    log_file = Path(log_dir) / f"processor_{datetime.today().strftime('%Y%m%d')}.log"

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)-35s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=7, encoding="utf-8"
    )
    fh.setFormatter(fmt)
    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(fmt)

    root = logging.getLogger()
    root.setLevel(numeric)
    root.addHandler(fh)
    root.addHandler(sh)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="report-processor",
        description="Scheduled report processor -- PDF + Excel generation and delivery.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --status
  python main.py --process-now
  python main.py --process-report 3f2c9a...
  python main.py --metrics --log-level WARNING
        """,
    )
    parser.add_argument("--config", default="config.yaml",
                        help="Path to config.yaml (default: config.yaml)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    ops = parser.add_argument_group("Operations")
    ops.add_argument("--status", action="store_true", help="Print detailed processor status")
    ops.add_argument("--process-now", action="store_true", help="Run one processing cycle now")
    ops.add_argument("--process-report", metavar="ID",
                     help="Force-generate one scheduled report regardless of due date")
    ops.add_argument("--metrics", action="store_true", help="Print today's processing metrics")
    ops.add_argument("--cleanup", action="store_true", help="Delete expired report files")
    ops.add_argument("--list-templates", action="store_true", help="List report templates")

    sched = parser.add_argument_group("Schedules")
    sched.add_argument("--add-schedule", metavar="NAME", help="Create a scheduled report")
    sched.add_argument("--template", help="Template id or name for --add-schedule")
    sched.add_argument("--frequency", default="weekly",
                       choices=["daily", "weekly", "monthly", "quarterly"])
    sched.add_argument("--delivery-method", default="email", choices=["email", "slack", "webhook"])
    sched.add_argument("--recipients", nargs="+", default=[],
                       help="Email addresses, Slack channels or webhook URLs")
    return parser.parse_args(argv)


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def run_operations(args: argparse.Namespace, service, logger: logging.Logger) -> int:
    """Execute the requested operations against `service`.

    Args:
        args: Parsed CLI arguments.
        service: Constructed ReportService (not started).
        logger: Configured logger.

    Returns:
        0 on success, 1 on error.
    """
    try:
        service.seed_templates()

        if args.list_templates:
            for template in service.list_templates():
                print(f"{template.id}  {template.name:<28} {template.category:<12} "
                      f"{', '.join(template.metrics)}")

        if args.add_schedule:
            if not args.template:
                logger.error("--add-schedule requires --template")
                return 1
            report = service.add_schedule(
                args.template, args.add_schedule, args.frequency,
                args.delivery_method, args.recipients,
            )
            _print(report.to_dict())

        if args.process_now:
            stats = service.process_now()
            _print(stats.to_dict())
            if stats.failed:
                logger.warning("%d report(s) failed this cycle", stats.failed)

        if args.process_report:
            stats = service.process_report(args.process_report)
            _print(stats.to_dict())
            if stats.failed:
                return 1

        if args.cleanup:
            removed = service.cleanup()
            logger.info("Cleanup removed %d file(s)", removed)

        if args.status:
            _print(service.status())

        if args.metrics:
            _print(service.metrics())
    except ReportProcessorError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1
    except Exception as exc:
        logger.error("Operation failed: %s", exc, exc_info=True)
        return 1
    return 0


def main(argv: list[str] | None = None) -> None:
    """Parse args, configure logging, and run the requested operations."""
    args = _parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ReportProcessorError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(log_dir=cfg["paths"]["log_dir"], level=args.log_level)
    logger = logging.getLogger(__name__)

    no_op = not any([
        args.status, args.process_now, args.process_report, args.metrics,
        args.cleanup, args.list_templates, args.add_schedule,
    ])
    if no_op:
        _parse_args(["--help"])

    from report_processor.service import ReportService

    service = ReportService(cfg)
    sys.exit(run_operations(args, service, logger))


if __name__ == "__main__":
    main()
