"""
assembler.py — Document assembly from templates and metric lookups.

Turns a `ReportTemplate` plus a date range into a populated `Document`.
Each metric id listed in the template is looked up in a `MetricRegistry`
(a plain name -> handler table); handlers fetch raw data from the Metric
Provider and shape it into a Section and, where a chart is requested, a
ChartSpec.

Failure policy:
    - Unknown metric id      -> Section with {"error": "Unknown metric: <id>"}
    - Provider error (one)   -> Section with {"error": ...}; others continue
    - Provider error (all)   -> TransientGenerationError (nothing to deliver)

Metrics shipped by default:
    revenue_summary, mrr_arr, revenue_by_stream,
    cohort_analysis, churn_metrics, revenue_forecast
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from report_processor.document import (
    ChartSpec,
    Document,
    MetricItem,
    MetricsContent,
    ReportPeriod,
    Section,
    TableContent,
)
from report_processor.errors import TransientGenerationError, ValidationError
from report_processor.highlights import DEFAULT_GROWTH_THRESHOLD, generate_highlights, growth_pct
from report_processor.models import CHART_KINDS, ReportTemplate, TemplateConfig

logger = logging.getLogger(__name__)

PERIOD_DAYS = {"daily": 1, "weekly": 7, "monthly": 30, "quarterly": 90}
DEFAULT_PERIOD_DAYS = 30

_PALETTE = ["#2563EB", "#059669", "#D97706", "#DC2626", "#7C3AED", "#0891B2"]


class MetricProvider(Protocol):
    """External analytics capability: named, date-ranged metric lookups."""

    def get_metric(
        self, name: str, start: datetime, end: datetime, **params: Any
    ) -> dict[str, Any]:
        ...


@dataclass
class AssemblyContext:
    """Everything a metric handler may read."""
    provider: MetricProvider
    period: ReportPeriod
    config: TemplateConfig
    chart_type: str
    figures: dict[str, Any] = field(default_factory=dict)

    def fetch(self, name: str, start: datetime | None = None,
              end: datetime | None = None, **params: Any) -> dict[str, Any]:
        data = self.provider.get_metric(
            name, start or self.period.start, end or self.period.end, **params
        )
        if not isinstance(data, dict):
            raise TransientGenerationError(
                f"Metric provider returned {type(data).__name__} for {name}"
            )
        return data

    @property
    def wants_chart(self) -> bool:
        return self.chart_type in CHART_KINDS


HandlerResult = tuple[Section, list[ChartSpec]]
Handler = Callable[[AssemblyContext], HandlerResult]


@dataclass
class _Registration:
    handler: Handler
    title: str
    chart_kinds: tuple[str, ...]


class MetricRegistry:
    """Name -> handler lookup table for metric sections."""

    def __init__(self):
        self._handlers: dict[str, _Registration] = {}

    def register(self, name: str, title: str = "", chart_kinds: tuple[str, ...] = ()):
        """Decorator registering `handler` under `name`."""
        def decorator(handler: Handler) -> Handler:
            if name in self._handlers:
                logger.warning("Replacing handler for metric %s", name)
            self._handlers[name] = _Registration(
                handler, title or name.replace("_", " ").title(), tuple(chart_kinds)
            )
            return handler
        return decorator

    def get(self, name: str) -> _Registration | None:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _num(data: dict, key: str, default: float = 0) -> float:
    value = data.get(key, default)
    return value if isinstance(value, (int, float)) and not isinstance(value, bool) else default


def _trend(growth: float) -> str:
    if growth > 0:
        return "up"
    if growth < 0:
        return "down"
    return "neutral"


def _previous_period(period: ReportPeriod) -> tuple[datetime, datetime]:
    length = period.end - period.start
    return period.start - length, period.start


def _chart(kind: str, title: str, labels: list, datasets: list[dict],
           y_label: str = "") -> ChartSpec:
    for i, ds in enumerate(datasets):
        ds.setdefault("color", _PALETTE[i % len(_PALETTE)])
    options = {"title": title}
    if y_label:
        options["y_label"] = y_label
    return ChartSpec(type=kind, labels=[str(l) for l in labels],
                     datasets=datasets, options=options)


def resolve_chart_type(metric: str, chart_types: list[str], chart_kinds: tuple[str, ...]) -> str:
    """Pick the presentation kind for a metric section.

    An explicit ``metric:kind`` entry wins; otherwise the first plain chart
    kind the handler can draw; otherwise ``"table"``.
    """
    for entry in chart_types:
        if ":" in entry:
            name, kind = entry.split(":", 1)
            if name == metric:
                return kind
    for entry in chart_types:
        if ":" not in entry and entry in chart_kinds:
            return entry
    return "table"


def resolve_period(filters: dict[str, Any], now: datetime) -> ReportPeriod:
    """Date range from filters: explicit dates, else `period`, else 30 days."""
    start = filters.get("start_date") or filters.get("startDate")
    end = filters.get("end_date") or filters.get("endDate")

    def _as_dt(value, name):
        if isinstance(value, datetime):
            dt = value
        else:
            try:
                dt = datetime.fromisoformat(str(value))
            except ValueError as exc:
                raise ValidationError(f"Invalid {name} filter: {value!r}") from exc
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

    end_dt = _as_dt(end, "end_date") if end else now
    if start:
        start_dt = _as_dt(start, "start_date")
    else:
        days = PERIOD_DAYS.get(filters.get("period"), DEFAULT_PERIOD_DAYS)
        start_dt = end_dt - timedelta(days=days)
    if start_dt >= end_dt:
        raise ValidationError("Report period start must be before its end")
    return ReportPeriod(start=start_dt, end=end_dt)


# ---------------------------------------------------------------------------
# Default metric handlers
# ---------------------------------------------------------------------------

default_registry = MetricRegistry()


@default_registry.register("revenue_summary", title="Revenue Summary")
def _revenue_summary(ctx: AssemblyContext) -> HandlerResult:
    current = ctx.fetch("revenue_summary")
    prev_start, prev_end = _previous_period(ctx.period)
    try:
        previous = ctx.fetch("revenue_summary", prev_start, prev_end)
    except Exception as exc:  # comparison is optional; the section still stands
        logger.warning("Previous-period revenue unavailable: %s", exc)
        previous = {}

    total = _num(current, "totalRevenue")
    growth = growth_pct(total, _num(previous, "totalRevenue"))
    ctx.figures["revenue_growth"] = growth
    ctx.figures["total_revenue"] = total

    cards = [
        MetricItem("Total Revenue", total, "currency", _trend(growth), round(abs(growth), 1)),
        MetricItem("Net Revenue", _num(current, "netRevenue"), "currency"),
        MetricItem("Transactions", _num(current, "totalTransactions"), "number"),
        MetricItem("Average Transaction", _num(current, "avgTransactionAmount"), "currency"),
    ]
    section = Section(
        title="Revenue Summary",
        type="metrics",
        content=MetricsContent(cards),
        metric="revenue_summary",
        data=current,
        chart_type=ctx.chart_type,
    )
    return section, []


@default_registry.register("mrr_arr", title="Recurring Revenue",
                           chart_kinds=("doughnut", "pie", "bar"))
def _mrr_arr(ctx: AssemblyContext) -> HandlerResult:
    data = ctx.fetch("mrr_arr")
    total_mrr = _num(data, "totalMrr")
    ctx.figures["total_mrr"] = total_mrr
    if "previousMrr" in data:
        ctx.figures["mrr_growth"] = growth_pct(total_mrr, _num(data, "previousMrr"))

    mrr_growth = ctx.figures.get("mrr_growth")
    cards = [
        MetricItem("Monthly Recurring Revenue", total_mrr, "currency",
                   _trend(mrr_growth) if mrr_growth is not None else None,
                   round(abs(mrr_growth), 1) if mrr_growth is not None else None),
        MetricItem("Annual Recurring Revenue", _num(data, "totalArr", total_mrr * 12), "currency"),
        MetricItem("Active Subscriptions", _num(data, "activeSubscriptions"), "number"),
        MetricItem("Churned Subscriptions", _num(data, "churnedSubscriptions"), "number"),
    ]
    section = Section("Recurring Revenue", "metrics", MetricsContent(cards),
                      metric="mrr_arr", data=data, chart_type=ctx.chart_type)
    charts = []
    if ctx.wants_chart:
        charts.append(_chart(
            ctx.chart_type, "Subscription Status Distribution",
            ["Active", "Churned"],
            [{"label": "Subscriptions",
              "data": [_num(data, "activeSubscriptions"), _num(data, "churnedSubscriptions")]}],
        ))
    return section, charts


@default_registry.register("revenue_by_stream", title="Revenue by Stream",
                           chart_kinds=("bar", "pie", "doughnut"))
def _revenue_by_stream(ctx: AssemblyContext) -> HandlerResult:
    data = ctx.fetch("revenue_by_stream")
    streams = data.get("streams") or []
    rows = []
    total_rev = total_net = total_tx = 0
    for stream in streams:
        rev = _num(stream, "totalRevenue")
        net = _num(stream, "netRevenue")
        tx = int(_num(stream, "transactionCount"))
        rows.append([stream.get("name") or "Unknown", round(rev, 2), round(net, 2), tx])
        total_rev += rev
        total_net += net
        total_tx += tx
    table = TableContent(
        headers=["Stream", "Revenue", "Net Revenue", "Transactions"],
        rows=rows,
        totals=["Total", round(total_rev, 2), round(total_net, 2), total_tx] if rows else None,
    )
    section = Section("Revenue by Stream", "table", table, metric="revenue_by_stream",
                      data=data, chart_type=ctx.chart_type)
    charts = []
    if ctx.wants_chart and rows:
        labels = [r[0] for r in rows]
        if ctx.chart_type == "bar":
            datasets = [{"label": "Total Revenue", "data": [r[1] for r in rows]},
                        {"label": "Net Revenue", "data": [r[2] for r in rows]}]
        else:
            datasets = [{"label": "Total Revenue", "data": [r[1] for r in rows]}]
        charts.append(_chart(ctx.chart_type, "Revenue by Stream Analysis",
                             labels, datasets, y_label="Revenue ($)"))
    return section, charts


@default_registry.register("cohort_analysis", title="Cohort Retention",
                           chart_kinds=("line", "bar"))
def _cohort_analysis(ctx: AssemblyContext) -> HandlerResult:
    months = getattr(ctx.config, "cohort_months", 12)
    data = ctx.fetch("cohort_analysis", months=months)
    cohorts = data.get("cohorts") or []
    depth = max((len(c.get("retention") or []) for c in cohorts), default=0)
    headers = ["Cohort", "Customers"] + [f"M{i}" for i in range(depth)]
    rows = []
    for cohort in cohorts:
        retention = list(cohort.get("retention") or [])
        cells = [f"{r * 100:.1f}%" for r in retention] + [""] * (depth - len(retention))
        rows.append([str(cohort.get("cohort", "")), int(_num(cohort, "size"))] + cells)
    section = Section("Cohort Retention", "table", TableContent(headers, rows),
                      metric="cohort_analysis", data=data, chart_type=ctx.chart_type)
    charts = []
    if ctx.wants_chart and depth:
        datasets = []
        for cohort in cohorts[-4:]:
            retention = [r * 100 for r in cohort.get("retention") or []]
            datasets.append({"label": str(cohort.get("cohort", "")), "data": retention})
        charts.append(_chart(ctx.chart_type, "Cohort Retention Curves",
                             [f"M{i}" for i in range(depth)], datasets, y_label="Retained (%)"))
    return section, charts


@default_registry.register("churn_metrics", title="Churn", chart_kinds=("bar",))
def _churn_metrics(ctx: AssemblyContext) -> HandlerResult:
    lookback = getattr(ctx.config, "churn_lookback_days", None)
    start = ctx.period.end - timedelta(days=lookback) if lookback else None
    data = ctx.fetch("churn_metrics", start=start)
    churn_rate = _num(data, "churnRate")
    ctx.figures["churn_rate"] = churn_rate
    cards = [
        MetricItem("Churn Rate", churn_rate, "percentage",
                   "down" if churn_rate < 0.05 else "up", round(churn_rate * 100, 1)),
        MetricItem("Churned Customers", _num(data, "churnedCustomers"), "number"),
        MetricItem("Starting Customers", _num(data, "startingCustomers"), "number"),
        MetricItem("Revenue Churn", _num(data, "revenueChurn"), "currency"),
        MetricItem("Net Revenue Retention", _num(data, "netRevenueRetention"), "percentage"),
    ]
    section = Section("Churn", "metrics", MetricsContent(cards), metric="churn_metrics",
                      data=data, chart_type=ctx.chart_type)
    charts = []
    if ctx.wants_chart:
        charts.append(_chart(
            ctx.chart_type, "Customer Movement",
            ["Starting", "Churned"],
            [{"label": "Customers",
              "data": [_num(data, "startingCustomers"), _num(data, "churnedCustomers")]}],
        ))
    return section, charts


@default_registry.register("revenue_forecast", title="Revenue Forecast",
                           chart_kinds=("line", "bar"))
def _revenue_forecast(ctx: AssemblyContext) -> HandlerResult:
    months = getattr(ctx.config, "forecast_months", 6)
    data = ctx.fetch("revenue_forecast", months=months)
    points = data.get("forecast") or []
    rows = [[str(p.get("period", "")),
             round(_num(p, "predicted"), 2),
             round(_num(p, "lower"), 2),
             round(_num(p, "upper"), 2)] for p in points]
    table = TableContent(["Period", "Forecast", "Lower Bound", "Upper Bound"], rows)
    section = Section("Revenue Forecast", "table", table, metric="revenue_forecast",
                      data=data, chart_type=ctx.chart_type)
    charts = []
    if ctx.wants_chart and rows:
        charts.append(_chart(
            ctx.chart_type, f"Revenue Forecast ({len(rows)} months)",
            [r[0] for r in rows],
            [{"label": "Forecast", "data": [r[1] for r in rows]},
             {"label": "Lower", "data": [r[2] for r in rows]},
             {"label": "Upper", "data": [r[3] for r in rows]}],
            y_label="Revenue ($)",
        ))
    return section, charts


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class DocumentAssembler:
    """Builds Documents from templates. Performs no byte-level formatting."""

    def __init__(
        self,
        provider: MetricProvider,
        registry: MetricRegistry | None = None,
        company_name: str = "",
        footer: str = "",
        include_charts: bool = True,
    ):
        self.provider = provider
        self.registry = registry or default_registry
        self.company_name = company_name
        self.footer = footer
        self.include_charts = include_charts

    def assemble(
        self,
        template: ReportTemplate,
        filters: dict[str, Any] | None = None,
        now: datetime | None = None,
        period: ReportPeriod | None = None,
    ) -> Document:
        """Populate a Document for `template`.

        Args:
            template: Template listing the metrics to include.
            filters: Schedule-level filters; override the template's.
            now: Generation time (defaults to the current UTC time).
            period: Explicit date range; derived from filters when omitted.

        Returns:
            Fully populated Document.

        Raises:
            ValidationError: Invalid date filters.
            TransientGenerationError: Every provider lookup failed.
        """
        now = now or datetime.now(timezone.utc)
        merged = {**template.filters, **(filters or {})}
        period = period or resolve_period(merged, now)
        config = template.config

        sections: list[Section] = []
        charts: list[ChartSpec] = []
        figures: dict[str, Any] = {}
        attempted = failed = 0
        last_error = ""

        for metric in template.metrics:
            registration = self.registry.get(metric)
            if registration is None:
                logger.warning("Template %s lists unknown metric %s", template.name, metric)
                sections.append(Section(
                    title=metric.replace("_", " ").title(),
                    type="text",
                    content={"error": f"Unknown metric: {metric}"},
                    metric=metric,
                ))
                continue

            chart_type = resolve_chart_type(metric, template.chart_types,
                                            registration.chart_kinds)
            ctx = AssemblyContext(self.provider, period, config, chart_type, figures)
            attempted += 1
            try:
                section, section_charts = registration.handler(ctx)
            except Exception as exc:
                failed += 1
                last_error = f"{metric}: {exc}"
                logger.warning("Metric %s failed for %s: %s", metric, template.name, exc)
                sections.append(Section(
                    title=registration.title,
                    type="text",
                    content={"error": f"Failed to load {metric}: {exc}"},
                    metric=metric,
                    chart_type=chart_type,
                ))
                continue

            sections.append(section)
            if self.include_charts:
                charts.extend(section_charts)

        if attempted and failed == attempted:
            raise TransientGenerationError(
                f"All {attempted} metric lookup(s) failed for {template.name} "
                f"(last error: {last_error})"
            )

        threshold = getattr(config, "highlight_growth_threshold", DEFAULT_GROWTH_THRESHOLD)
        document = Document(
            title=template.name,
            subtitle=getattr(config, "subtitle", "") or template.description,
            company_name=self.company_name,
            period=period,
            generated_at=now,
            sections=sections,
            charts=charts,
            highlights=generate_highlights(figures, threshold),
            footer=self.footer,
            currency=getattr(config, "currency", "USD"),
        )
        logger.info(
            "Assembled %s: %d section(s), %d chart(s), %d failed metric(s)",
            template.name, len(sections), len(charts), failed,
        )
        return document
