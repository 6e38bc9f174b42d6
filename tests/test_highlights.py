"""
test_highlights.py — Unit tests for highlight generation and growth maths.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from report_processor.highlights import _pct, _usd, generate_highlights, growth_pct


class TestHelpers:

    def test_usd_units(self):
        assert _usd(1_234_567) == "$1,234,567"
        assert _usd(1_234_567, "m") == "$1.2M"
        assert _usd(48_000, "k") == "$48k"
        assert _usd(-500) == "-$500"

    def test_pct_sign(self):
        assert _pct(12.5) == "+12.5%"
        assert _pct(-3.0) == "-3.0%"
        assert _pct(7, sign=False) == "7.0%"


class TestGrowthPct:

    def test_regular_growth(self):
        assert growth_pct(110, 100) == pytest.approx(10.0)

    def test_decline(self):
        assert growth_pct(80, 100) == pytest.approx(-20.0)

    def test_zero_previous_positive_current(self):
        assert growth_pct(500, 0) == 100.0

    def test_zero_previous_zero_current(self):
        assert growth_pct(0, 0) == 0.0


class TestGenerateHighlights:

    def test_empty_figures(self):
        assert generate_highlights({}) == []

    def test_strong_revenue_growth(self):
        lines = generate_highlights({"revenue_growth": 15.0, "total_revenue": 250_000})
        assert len(lines) == 1
        assert "15.0%" in lines[0]
        assert "$250,000" in lines[0]

    def test_growth_below_threshold_is_quiet(self):
        assert generate_highlights({"revenue_growth": 4.0}) == []

    def test_custom_threshold(self):
        assert generate_highlights({"revenue_growth": 4.0}, growth_threshold=3.0)

    def test_revenue_decline(self):
        lines = generate_highlights({"revenue_growth": -8.0})
        assert "declined 8.0%" in lines[0]

    def test_mrr_growth(self):
        lines = generate_highlights({"mrr_growth": 6.0, "total_mrr": 48_000})
        assert lines == ["MRR increased by 6.0% to $48k, indicating healthy recurring revenue."]

    def test_low_and_high_churn(self):
        assert "Low churn rate of 2.0%" in generate_highlights({"churn_rate": 0.02})[0]
        assert "above the 5% comfort level" in generate_highlights({"churn_rate": 0.08})[0]
