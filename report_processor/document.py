"""
document.py — Format-independent report document model.

The assembler produces a `Document`; the PDF and Excel backends both
consume the very same instance, so the two outputs cannot drift apart in
content. Nothing here knows about pages, cells or bytes.

    Document
      ├── sections: [Section]   (text | table | metrics, or an error marker)
      └── charts:   [ChartSpec] (declarative; rasterised only when rendered)
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from report_processor.errors import ValidationError

logger = logging.getLogger(__name__)

SECTION_TYPES = ("text", "table", "metrics")
METRIC_FORMATS = ("currency", "percentage", "number", "text")
TRENDS = ("up", "down", "neutral")


@dataclass
class MetricItem:
    """A single labelled value card."""
    label: str
    value: Any
    format: str = "text"
    trend: str | None = None
    trend_value: float | None = None

    def __post_init__(self):
        if self.format not in METRIC_FORMATS:
            raise ValidationError(f"Unknown metric format: {self.format!r}")
        if self.trend is not None and self.trend not in TRENDS:
            raise ValidationError(f"Unknown trend: {self.trend!r}")


@dataclass
class TableContent:
    headers: list[str]
    rows: list[list[Any]]
    totals: list[Any] | None = None

    def __post_init__(self):
        width = len(self.headers)
        for row in self.rows:
            if len(row) != width:
                raise ValidationError(
                    f"Table row has {len(row)} cells, expected {width}"
                )
        if self.totals is not None and len(self.totals) != width:
            raise ValidationError("Totals row width does not match headers")


@dataclass
class MetricsContent:
    metrics: list[MetricItem]


@dataclass
class Section:
    """One logical block of a report.

    `content` is a str for text sections, `TableContent` for tables and
    `MetricsContent` for metric grids. A failed or unknown metric is kept
    in place as a dict ``{"error": "..."}`` so the rest of the report still
    renders.
    """
    title: str
    type: str
    content: Any
    metric: str | None = None
    data: dict = field(default_factory=dict)
    chart_type: str = "table"

    def __post_init__(self):
        if self.type not in SECTION_TYPES:
            raise ValidationError(f"Unknown section type: {self.type!r}")

    @property
    def is_error(self) -> bool:
        return isinstance(self.content, dict) and "error" in self.content

    @property
    def error(self) -> str | None:
        return self.content["error"] if self.is_error else None


@dataclass
class ChartSpec:
    """Declarative chart description: `datasets` are ``{label, data, color?}``."""
    type: str
    labels: list[str]
    datasets: list[dict]
    options: dict = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.options.get("title", "")


@dataclass
class ReportPeriod:
    start: datetime
    end: datetime

    @property
    def label(self) -> str:
        return f"{self.start:%d %b %Y} – {self.end:%d %b %Y}"


@dataclass
class Document:
    title: str
    period: ReportPeriod
    generated_at: datetime
    subtitle: str = ""
    company_name: str = ""
    sections: list[Section] = field(default_factory=list)
    charts: list[ChartSpec] = field(default_factory=list)
    highlights: list[str] = field(default_factory=list)
    footer: str = ""
    currency: str = "USD"

    def to_dict(self) -> dict[str, Any]:
        """JSON/YAML-friendly snapshot stored in report history."""
        snapshot = asdict(self)
        snapshot["period"] = {
            "start": self.period.start.isoformat(),
            "end": self.period.end.isoformat(),
        }
        snapshot["generated_at"] = self.generated_at.isoformat()
        return snapshot


def format_metric_value(value: Any, fmt: str = "text", currency: str = "USD") -> str:
    """Render a metric value for display.

    Args:
        value: Raw value; strings pass through untouched.
        fmt: currency | percentage | number | text.
        currency: ISO code; USD renders with a dollar sign.

    Returns:
        Display string. Percentages expect a fraction (0.25 -> '25.0%').
    """
    if isinstance(value, str) or value is None:
        return "" if value is None else value
    if fmt == "currency":
        sign = "-" if value < 0 else ""
        symbol = "$" if currency == "USD" else f"{currency} "
        return f"{sign}{symbol}{abs(value):,.2f}"
    if fmt == "percentage":
        return f"{value * 100:.1f}%"
    if fmt == "number":
        if float(value).is_integer():
            return f"{int(value):,}"
        return f"{value:,.2f}"
    return str(value)


def format_cell(value: Any) -> str:
    """String form of a table cell for layouts that need text."""
    if value is None:
        return ""
    if isinstance(value, float):
        return f"{value:,.2f}"
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value:,}"
    return str(value)
