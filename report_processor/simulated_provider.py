"""
simulated_provider.py — Synthetic Metric Provider.

Stands in for the analytics service when the processor runs in demo or
development mode. Figures are generated on demand from a seeded NumPy
generator, one draw per calendar day, so the same date range always yields
the same numbers regardless of how it is sliced:

    revenue_summary    — totals for the window
    revenue_by_stream  — totals per revenue stream
    mrr_arr            — subscription base at the end of the window
    churn_metrics      — customers lost during the window
    cohort_analysis    — monthly signup cohorts with retention curves
    revenue_forecast   — linear trend over monthly revenue, with bounds

Data has:
    - Weekly and annual seasonality
    - Compounding annual growth
    - Per-stream revenue mix and refund rates
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

_ANCHOR = datetime(2020, 1, 1, tzinfo=timezone.utc)

DEFAULT_SETTINGS: dict[str, Any] = {
    "seed": 42,
    "daily_revenue": 18_000.0,
    "annual_growth_rate": 0.18,
    "avg_transaction": 46.0,
    "revenue_mix": {
        "Dine In": 0.52,
        "Takeaway": 0.23,
        "Delivery": 0.17,
        "Catering": 0.08,
    },
    "refund_rates": {
        "Dine In": 0.010,
        "Takeaway": 0.015,
        "Delivery": 0.035,
        "Catering": 0.020,
    },
    "subscriptions": 1_250,
    "subscription_price": 89.0,
    "monthly_churn_rate": 0.032,
    # Mon..Sun multipliers
    "weekday_factors": [0.82, 0.86, 0.93, 1.00, 1.18, 1.26, 0.95],
}


def _as_utc(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


class SimulatedMetricProvider:
    """Deterministic metric source implementing the MetricProvider protocol."""

    def __init__(self, settings: dict[str, Any] | None = None):
        self.settings = {**DEFAULT_SETTINGS, **(settings or {})}
        self._handlers = {
            "revenue_summary": self._revenue_summary,
            "revenue_by_stream": self._revenue_by_stream,
            "mrr_arr": self._mrr_arr,
            "churn_metrics": self._churn_metrics,
            "cohort_analysis": self._cohort_analysis,
            "revenue_forecast": self._revenue_forecast,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_metric(
        self, name: str, start: datetime, end: datetime, **params: Any
    ) -> dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            raise ValueError(f"Metric not available from simulator: {name}")
        start, end = _as_utc(start), _as_utc(end)
        if start >= end:
            raise ValueError("start must be before end")
        logger.debug("Simulating %s for %s .. %s", name, start.date(), end.date())
        return handler(start, end, **params)

    # ------------------------------------------------------------------
    # Daily ledger
    # ------------------------------------------------------------------

    def _rng(self, day: pd.Timestamp, salt: int = 0) -> np.random.Generator:
        return np.random.default_rng([self.settings["seed"], day.toordinal(), salt])

    def _growth_factor(self, moment: datetime) -> float:
        years = (moment - _ANCHOR).days / 365.25
        return (1 + self.settings["annual_growth_rate"]) ** years

    def _daily_frame(self, start: datetime, end: datetime) -> pd.DataFrame:
        """One row per day x revenue stream in [start, end)."""
        s = self.settings
        days = pd.date_range(start.date(), end.date(), freq="D", inclusive="left", tz="UTC")
        records = []
        for day in days:
            rng = self._rng(day)
            annual = 1 + 0.08 * np.cos(2 * np.pi * (day.dayofyear - 200) / 365.25)
            base = (
                s["daily_revenue"]
                * self._growth_factor(day.to_pydatetime())
                * s["weekday_factors"][day.dayofweek]
                * annual
            )
            for stream, mix in s["revenue_mix"].items():
                revenue = max(0.0, base * mix * (1 + float(rng.normal(0, 0.07))))
                refunds = revenue * s["refund_rates"].get(stream, 0.0)
                ticket = s["avg_transaction"] * (1 + float(rng.normal(0, 0.05)))
                records.append({
                    "date": day,
                    "stream": stream,
                    "revenue": revenue,
                    "refunds": refunds,
                    "transactions": max(1, int(revenue / ticket)),
                })
        if not records:
            return pd.DataFrame(columns=["date", "stream", "revenue", "refunds", "transactions"])
        return pd.DataFrame(records)

    def _active_subscriptions(self, moment: datetime) -> int:
        rng = self._rng(pd.Timestamp(moment.date()), salt=1)
        base = self.settings["subscriptions"] * self._growth_factor(moment)
        return max(0, int(base * (1 + float(rng.normal(0, 0.01)))))

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _revenue_summary(self, start, end, **_) -> dict[str, Any]:
        df = self._daily_frame(start, end)
        total = float(df["revenue"].sum())
        transactions = int(df["transactions"].sum())
        return {
            "totalRevenue": round(total, 2),
            "netRevenue": round(total - float(df["refunds"].sum()), 2),
            "totalTransactions": transactions,
            "avgTransactionAmount": round(total / transactions, 2) if transactions else 0.0,
        }

    def _revenue_by_stream(self, start, end, **_) -> dict[str, Any]:
        df = self._daily_frame(start, end)
        if df.empty:
            return {"streams": []}
        grouped = (
            df.groupby("stream", sort=False)
            .agg(revenue=("revenue", "sum"), refunds=("refunds", "sum"),
                 transactions=("transactions", "sum"))
            .sort_values("revenue", ascending=False)
        )
        return {
            "streams": [
                {
                    "name": name,
                    "totalRevenue": round(float(row.revenue), 2),
                    "netRevenue": round(float(row.revenue - row.refunds), 2),
                    "transactionCount": int(row.transactions),
                }
                for name, row in grouped.iterrows()
            ]
        }

    def _mrr_arr(self, start, end, **_) -> dict[str, Any]:
        price = self.settings["subscription_price"]
        active = self._active_subscriptions(end)
        previous = self._active_subscriptions(end - timedelta(days=30))
        churned = int(round(previous * self.settings["monthly_churn_rate"]))
        mrr = active * price
        return {
            "totalMrr": round(mrr, 2),
            "totalArr": round(mrr * 12, 2),
            "previousMrr": round(previous * price, 2),
            "activeSubscriptions": active,
            "churnedSubscriptions": churned,
            "averageRevenuePerAccount": round(price, 2),
        }

    def _churn_metrics(self, start, end, **_) -> dict[str, Any]:
        s = self.settings
        starting = self._active_subscriptions(start)
        months = max((end - start).days, 1) / 30
        rng = self._rng(pd.Timestamp(end.date()), salt=2)
        rate = max(0.0, s["monthly_churn_rate"] * (1 + float(rng.normal(0, 0.15))))
        churned = min(starting, int(round(starting * rate * months)))
        ending = self._active_subscriptions(end)
        revenue_churn = churned * s["subscription_price"]
        nrr = (ending * s["subscription_price"]) / (starting * s["subscription_price"]) if starting else 0.0
        return {
            "churnRate": round(churned / starting, 4) if starting else 0.0,
            "churnedCustomers": churned,
            "startingCustomers": starting,
            "endingCustomers": ending,
            "revenueChurn": round(revenue_churn, 2),
            "netRevenueRetention": round(nrr, 4),
        }

    def _cohort_analysis(self, start, end, months: int = 12, **_) -> dict[str, Any]:
        s = self.settings
        periods = pd.period_range(end=pd.Timestamp(end.date()), periods=months, freq="M")
        cohorts = []
        for age, period in enumerate(reversed(periods)):
            stamp = period.to_timestamp()
            rng = self._rng(stamp, salt=3)
            size = max(1, int(s["subscriptions"] * 0.06 * (1 + float(rng.normal(0, 0.2)))))
            retention = [1.0]
            for _ in range(age):
                decay = 1 - s["monthly_churn_rate"] * (1 + float(rng.normal(0, 0.25)))
                retention.append(round(retention[-1] * min(1.0, max(0.0, decay)), 4))
            cohorts.append({"cohort": str(period), "size": size, "retention": retention})
        cohorts.reverse()
        return {"cohorts": cohorts}

    def _revenue_forecast(self, start, end, months: int = 6, **_) -> dict[str, Any]:
        history_start = end - timedelta(days=365)
        df = self._daily_frame(history_start, end)
        monthly = df.groupby(df["date"].dt.strftime("%Y-%m"))["revenue"].sum()
        # A partial trailing month would drag the trend down
        monthly = monthly.iloc[1:-1] if len(monthly) > 3 else monthly
        y = monthly.to_numpy(dtype=float)
        x = np.arange(len(y))
        slope, intercept = np.polyfit(x, y, 1)
        spread = 1.96 * float(np.std(y - (slope * x + intercept)))

        last = pd.Period(monthly.index[-1], freq="M")
        forecast = []
        for step in range(1, months + 1):
            predicted = float(slope * (len(y) - 1 + step) + intercept)
            forecast.append({
                "period": str(last + step),
                "predicted": round(predicted, 2),
                "lower": round(max(0.0, predicted - spread), 2),
                "upper": round(predicted + spread, 2),
            })
        return {"forecast": forecast, "method": "linear_trend", "historyMonths": len(y)}
