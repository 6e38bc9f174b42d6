"""
config.py — Configuration loading.

Reads `config.yaml` with PyYAML, deep-merges it over the built-in defaults
below, applies environment overrides and validates the cross-field rules
the processor depends on. Secrets (SMTP, Slack) are never read from the
YAML file; the delivery channels pull them from the environment.

Environment overrides:
    ENABLE_REPORT_PROCESSING   "false"/"0"/"no" disables the poller
    REPORTS_OUTPUT_DIR         replaces paths.output_dir
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from report_processor.errors import ValidationError
from report_processor.renderer import SUPPORTED_FORMATS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "project": {
        "company_name": "",
        "timezone": "UTC",
    },
    "paths": {
        "output_dir": "reports",
        "log_dir": "logs",
        "data_dir": "data",
        "templates_file": "templates/report_templates.yaml",
    },
    "processor": {
        "enabled": True,
        "check_interval_minutes": 15,
        "report_timeout_seconds": 600,
        "formats": ["pdf", "xlsx"],
        "include_charts": True,
    },
    "cleanup": {
        "enabled": True,
        "max_age_hours": 72,
        "interval_minutes": 60,
    },
    "report": {
        "footer": "Generated automatically by the report processor",
        "branding_enabled": True,
        "chart_dpi": 150,
        "brand": {
            "primary": "1F3864",
            "secondary": "2196A6",
            "accent": "E74C3C",
            "light": "EBF5FB",
            "text": "2C3E50",
            "green": "27AE60",
            "amber": "F39C12",
            "red": "C0392B",
        },
    },
    "delivery": {
        "email_subject": "{report} | {company}",
        "slack_username": "Report Bot",
        "slack_icon_emoji": ":bar_chart:",
        "public_base_url": "",
        "request_timeout_seconds": 10,
        "max_attempts": 3,
    },
    "storage": {
        "backend": "yaml",
    },
    "provider": {
        "seed": 42,
    },
}

_FALSEY = {"0", "false", "no", "off"}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env(cfg: dict[str, Any], env: dict[str, str]) -> None:
    flag = env.get("ENABLE_REPORT_PROCESSING")
    if flag is not None and flag.strip():
        cfg["processor"]["enabled"] = flag.strip().lower() not in _FALSEY
    output_dir = env.get("REPORTS_OUTPUT_DIR", "").strip()
    if output_dir:
        cfg["paths"]["output_dir"] = output_dir


def validate_config(cfg: dict[str, Any]) -> None:
    """Reject configurations the processor cannot run safely with.

    Raises:
        ValidationError: On the first invalid value found.
    """
    proc = cfg["processor"]
    interval = proc.get("check_interval_minutes")
    if not isinstance(interval, (int, float)) or interval <= 0:
        raise ValidationError("processor.check_interval_minutes must be positive")
    timeout = proc.get("report_timeout_seconds")
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValidationError("processor.report_timeout_seconds must be positive")
    formats = proc.get("formats") or []
    if not formats or any(f not in SUPPORTED_FORMATS for f in formats):
        raise ValidationError(
            f"processor.formats must be a non-empty subset of {', '.join(SUPPORTED_FORMATS)}"
        )

    cleanup = cfg["cleanup"]
    max_age = cleanup.get("max_age_hours")
    if not isinstance(max_age, (int, float)) or max_age <= 0:
        raise ValidationError("cleanup.max_age_hours must be positive")
    # A sweep must never delete an artifact of a report still being processed
    if max_age * 3600 <= timeout:
        raise ValidationError(
            f"cleanup.max_age_hours ({max_age}h) must exceed the per-report "
            f"timeout ({timeout}s)"
        )
    if cleanup.get("interval_minutes", 0) <= 0:
        raise ValidationError("cleanup.interval_minutes must be positive")

    if cfg["storage"].get("backend") not in ("yaml", "memory"):
        raise ValidationError("storage.backend must be 'yaml' or 'memory'")

    delivery = cfg["delivery"]
    if int(delivery.get("max_attempts", 0)) < 1:
        raise ValidationError("delivery.max_attempts must be at least 1")


def load_config(
    config_path: str | Path | None = "config.yaml",
    env: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Load, merge, override and validate the configuration.

    Args:
        config_path: YAML file; None or a missing file means defaults only.
        env: Environment mapping (defaults to os.environ).

    Returns:
        Complete configuration dict.

    Raises:
        ValidationError: Malformed YAML or invalid values.
    """
    raw: dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            try:
                with open(path, "r") as fh:
                    raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ValidationError(f"Cannot parse {path}: {exc}") from exc
            if not isinstance(raw, dict):
                raise ValidationError(f"{path} must contain a mapping")
        else:
            logger.warning("Config file %s not found, using defaults", path)

    cfg = _deep_merge(DEFAULT_CONFIG, raw)
    _apply_env(cfg, dict(os.environ) if env is None else env)
    validate_config(cfg)
    return cfg
