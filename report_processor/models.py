"""
models.py — Record types for templates, schedules and report history.

Every record is a dataclass validated at construction time, so malformed
configuration is rejected when it is loaded rather than when a scheduled
run first touches it.

Records:
    ReportTemplate   — what goes into a report (metrics, chart types, filters)
    ScheduledReport  — when and how a template is generated and delivered
    ReportHistory    — one append-only entry per generation attempt
    ProcessingStats  — summary returned by every execution entry point
"""

import calendar
import logging
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any

from report_processor.errors import ValidationError

logger = logging.getLogger(__name__)

FREQUENCIES = ("daily", "weekly", "monthly", "quarterly")
DELIVERY_METHODS = ("email", "slack", "webhook")
CATEGORIES = ("executive", "operational", "financial", "custom")
HISTORY_STATUSES = ("completed", "failed")
FAILURE_KINDS = ("generation", "delivery", "validation", "timeout")
TRIGGERS = ("scheduled", "manual", "forced")

CHART_KINDS = ("line", "bar", "pie", "doughnut", "scatter")
PRESENTATION_KINDS = CHART_KINDS + ("table", "kpi")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Calendar arithmetic
# ---------------------------------------------------------------------------

def _add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_next_run(frequency: str, now: datetime) -> datetime:
    """Return `now` advanced by exactly one calendar unit of `frequency`.

    Args:
        frequency: One of daily, weekly, monthly, quarterly.
        now: Reference moment.

    Returns:
        The next run moment (always strictly after `now`).

    Raises:
        ValidationError: If the frequency is not recognised.
    """
    if frequency == "daily":
        return now + timedelta(days=1)
    if frequency == "weekly":
        return now + timedelta(days=7)
    if frequency == "monthly":
        return _add_months(now, 1)
    if frequency == "quarterly":
        return _add_months(now, 3)
    raise ValidationError(f"Unknown frequency: {frequency!r}")


def _parse_datetime(value: Any, field_name: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValidationError(f"{field_name}: invalid timestamp {value!r}") from exc
    else:
        raise ValidationError(f"{field_name}: expected a timestamp, got {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    return value.strip()


def _require_choice(value: Any, choices: tuple, field_name: str) -> str:
    if value not in choices:
        raise ValidationError(
            f"{field_name} must be one of {', '.join(choices)} (got {value!r})"
        )
    return value


def _str_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{field_name} must be a list of strings")
    return [v.strip() for v in value if v.strip()]


# ---------------------------------------------------------------------------
# Template configuration (one struct per category)
# ---------------------------------------------------------------------------

@dataclass
class TemplateConfig:
    """Fields shared by every template category."""
    metrics: list[str]
    chart_types: list[str] = field(default_factory=list)
    filters: dict = field(default_factory=dict)

    category = "custom"

    def __post_init__(self):
        self.metrics = _str_list(self.metrics, "metrics")
        if not self.metrics:
            raise ValidationError("Template config needs at least one metric")
        self.chart_types = _str_list(self.chart_types, "chart_types")
        for entry in self.chart_types:
            kind = entry.split(":", 1)[1] if ":" in entry else entry
            if kind not in PRESENTATION_KINDS:
                raise ValidationError(f"Unsupported chart type: {entry!r}")
        if self.filters is None:
            self.filters = {}
        if not isinstance(self.filters, dict):
            raise ValidationError("filters must be a mapping")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutiveTemplateConfig(TemplateConfig):
    highlight_growth_threshold: float = 10.0

    category = "executive"


@dataclass
class FinancialTemplateConfig(TemplateConfig):
    currency: str = "USD"
    forecast_months: int = 6

    category = "financial"

    def __post_init__(self):
        super().__post_init__()
        if not isinstance(self.forecast_months, int) or not 1 <= self.forecast_months <= 24:
            raise ValidationError("forecast_months must be an integer between 1 and 24")
        self.currency = _require_str(self.currency, "currency").upper()


@dataclass
class OperationalTemplateConfig(TemplateConfig):
    cohort_months: int = 12
    churn_lookback_days: int = 90

    category = "operational"

    def __post_init__(self):
        super().__post_init__()
        if not isinstance(self.cohort_months, int) or not 1 <= self.cohort_months <= 36:
            raise ValidationError("cohort_months must be an integer between 1 and 36")
        if not isinstance(self.churn_lookback_days, int) or self.churn_lookback_days < 1:
            raise ValidationError("churn_lookback_days must be a positive integer")


@dataclass
class CustomTemplateConfig(TemplateConfig):
    subtitle: str = ""

    category = "custom"


_CONFIG_TYPES: dict[str, type[TemplateConfig]] = {
    "executive": ExecutiveTemplateConfig,
    "financial": FinancialTemplateConfig,
    "operational": OperationalTemplateConfig,
    "custom": CustomTemplateConfig,
}


def parse_template_config(category: str, raw: dict[str, Any]) -> TemplateConfig:
    """Build the config struct matching `category` from a raw mapping.

    Accepts camelCase keys (``chartTypes``) as written by older exports.

    Raises:
        ValidationError: Unknown category, unknown keys or invalid values.
    """
    _require_choice(category, CATEGORIES, "category")
    if not isinstance(raw, dict):
        raise ValidationError("Template config must be a mapping")
    config_cls = _CONFIG_TYPES[category]
    allowed = {f.name for f in fields(config_cls)}
    kwargs = {}
    for key, value in raw.items():
        name = "chart_types" if key == "chartTypes" else key
        if name == "layout":
            continue  # layout hints are a UI concern
        if name not in allowed:
            raise ValidationError(f"Unknown {category} template option: {key!r}")
        kwargs[name] = value
    if "metrics" not in kwargs:
        raise ValidationError("Template config is missing 'metrics'")
    try:
        return config_cls(**kwargs)
    except TypeError as exc:
        raise ValidationError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class ReportTemplate:
    """A reusable report definition. Read-only to the pipeline."""
    name: str
    category: str
    config: TemplateConfig
    description: str = ""
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.name = _require_str(self.name, "name")
        _require_choice(self.category, CATEGORIES, "category")
        if isinstance(self.config, dict):
            self.config = parse_template_config(self.category, self.config)
        if self.config.category != self.category:
            raise ValidationError(
                f"Template {self.name!r}: {self.config.category} config on a "
                f"{self.category} template"
            )

    @property
    def metrics(self) -> list[str]:
        return self.config.metrics

    @property
    def chart_types(self) -> list[str]:
        return self.config.chart_types

    @property
    def filters(self) -> dict:
        return self.config.filters

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "config": self.config.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReportTemplate":
        config = data.get("config", data.get("templateConfig"))
        if config is None:
            raise ValidationError(f"Template {data.get('name')!r} has no config")
        kwargs = {
            "name": data.get("name"),
            "category": data.get("category"),
            "config": parse_template_config(data.get("category"), config),
            "description": data.get("description") or "",
        }
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        return cls(**kwargs)


@dataclass
class ScheduledReport:
    """When and how a template is generated and delivered.

    The processor owns `last_run_date` and `next_run_date`; everything else
    belongs to the operator.
    """
    template_id: str
    name: str
    frequency: str
    delivery_method: str
    recipients: list[str]
    filters: dict = field(default_factory=dict)
    next_run_date: datetime | None = None
    last_run_date: datetime | None = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.template_id = _require_str(self.template_id, "template_id")
        self.name = _require_str(self.name, "name")
        _require_choice(self.frequency, FREQUENCIES, "frequency")
        _require_choice(self.delivery_method, DELIVERY_METHODS, "delivery_method")
        self.recipients = _str_list(self.recipients, "recipients")
        if not self.recipients:
            raise ValidationError("At least one recipient is required")
        if self.filters is None:
            self.filters = {}
        if not isinstance(self.filters, dict):
            raise ValidationError("filters must be a mapping")
        if not isinstance(self.is_active, bool):
            raise ValidationError("is_active must be a boolean")
        self.created_at = _parse_datetime(self.created_at, "created_at") or utcnow()
        self.last_run_date = _parse_datetime(self.last_run_date, "last_run_date")
        self.next_run_date = _parse_datetime(self.next_run_date, "next_run_date")
        if self.next_run_date is None and self.is_active:
            self.next_run_date = compute_next_run(self.frequency, self.created_at)

    def is_due(self, now: datetime) -> bool:
        return (
            self.is_active
            and self.next_run_date is not None
            and self.next_run_date <= now
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduledReport":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ReportHistory:
    """One generation attempt. Never mutated after it is written."""
    report_name: str
    status: str
    generation_time_ms: int
    template_id: str | None = None
    scheduled_report_id: str | None = None
    report_data: dict = field(default_factory=dict)
    file_path: str | None = None
    artifact_paths: list[str] = field(default_factory=list)
    error_message: str | None = None
    failure_kind: str | None = None
    trigger: str = "scheduled"
    generated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        _require_choice(self.status, HISTORY_STATUSES, "status")
        _require_choice(self.trigger, TRIGGERS, "trigger")
        if self.failure_kind is not None:
            _require_choice(self.failure_kind, FAILURE_KINDS, "failure_kind")
        if self.status == "failed" and self.failure_kind is None:
            self.failure_kind = "generation"
        self.generated_at = _parse_datetime(self.generated_at, "generated_at") or utcnow()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReportHistory":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ProcessingStats:
    """Outcome of one cycle or forced run."""
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    delivery_failures: int = 0
    processing_time_ms: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
