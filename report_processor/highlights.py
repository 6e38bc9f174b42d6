"""
highlights.py — Key-highlight commentary for the report header.

Turns headline figures (revenue growth, MRR growth, churn) into short
sentences shown above the table of contents in the PDF and on the Excel
summary sheet. Only figures that clear their threshold produce a line, so
a quiet period yields an empty list rather than filler text.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_GROWTH_THRESHOLD = 10.0
MRR_GROWTH_THRESHOLD = 5.0
LOW_CHURN_THRESHOLD = 0.05


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def _usd(value: float, units: str = "full") -> str:
    """Format a USD value.

    Args:
        value: Raw float value.
        units: 'full' = $1,234,567 | 'm' = $1.2M | 'k' = $1,234k

    Returns:
        Formatted string.
    """
    abs_val = abs(value)
    sign = "-" if value < 0 else ""
    if units == "m":
        return f"{sign}${abs_val / 1_000_000:.1f}M"
    elif units == "k":
        return f"{sign}${abs_val / 1_000:.0f}k"
    else:
        return f"{sign}${abs_val:,.0f}"


def _pct(value: float, sign: bool = True, decimals: int = 1) -> str:
    """Format an already-scaled percentage (12.5 -> '+12.5%')."""
    prefix = "+" if sign and value >= 0 else ""
    return f"{prefix}{value:.{decimals}f}%"


def growth_pct(current: float, previous: float) -> float:
    """Period-over-period growth in percent.

    A zero prior period cannot be divided by: growth is reported as 100%
    when the current value is positive and 0% otherwise.
    """
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


# ---------------------------------------------------------------------------
# Highlight generation
# ---------------------------------------------------------------------------

def generate_highlights(
    figures: dict[str, Any],
    growth_threshold: float = DEFAULT_GROWTH_THRESHOLD,
) -> list[str]:
    """Build highlight sentences from headline figures.

    Args:
        figures: Any of ``revenue_growth`` (percent), ``total_revenue``,
            ``mrr_growth`` (percent), ``total_mrr``, ``churn_rate``
            (fraction). Missing keys are skipped.
        growth_threshold: Minimum revenue growth (percent) worth calling out.

    Returns:
        List of sentences, possibly empty.
    """
    lines = []

    revenue_growth = figures.get("revenue_growth")
    if revenue_growth is not None:
        if revenue_growth > growth_threshold:
            lines.append(
                f"Strong revenue growth of {_pct(revenue_growth, sign=False)} this period"
                + (f", reaching {_usd(figures['total_revenue'])}"
                   if figures.get("total_revenue") else "")
                + "."
            )
        elif revenue_growth < 0:
            lines.append(
                f"Revenue declined {_pct(abs(revenue_growth), sign=False)} "
                "against the previous period."
            )

    mrr_growth = figures.get("mrr_growth")
    if mrr_growth is not None and mrr_growth > MRR_GROWTH_THRESHOLD:
        line = f"MRR increased by {_pct(mrr_growth, sign=False)}"
        if figures.get("total_mrr"):
            line += f" to {_usd(figures['total_mrr'], 'k')}"
        lines.append(line + ", indicating healthy recurring revenue.")

    churn_rate = figures.get("churn_rate")
    if churn_rate is not None:
        if churn_rate < LOW_CHURN_THRESHOLD:
            lines.append(
                f"Low churn rate of {_pct(churn_rate * 100, sign=False)} "
                "shows strong customer retention."
            )
        else:
            lines.append(
                f"Churn of {_pct(churn_rate * 100, sign=False)} is above the "
                f"{_pct(LOW_CHURN_THRESHOLD * 100, sign=False, decimals=0)} comfort level."
            )

    logger.debug("Generated %d highlight(s)", len(lines))
    return lines
