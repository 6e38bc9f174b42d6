"""
test_renderers.py — Unit tests for the PDF and Excel backends.

Tests cover:
    - PDF is written and starts with the PDF header
    - Workbook sheet layout, totals row, index hyperlinks and error sheets
    - ReportRenderer writes one artifact per configured format
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from openpyxl import load_workbook

sys.path.insert(0, str(Path(__file__).parent.parent))

from report_processor.document import (
    ChartSpec,
    Document,
    MetricItem,
    MetricsContent,
    ReportPeriod,
    Section,
    TableContent,
)
from report_processor.errors import ValidationError
from report_processor.excel_pack import _sheet_title, generate_workbook, record_count
from report_processor.pdf_builder import BRAND_DEFAULTS, _build_styles, _section_block, generate_pdf
from report_processor.renderer import ReportRenderer

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def document():
    return Document(
        title="Monthly Board Pack",
        subtitle="Trading update",
        company_name="Northwind Hospitality Group",
        period=ReportPeriod(datetime(2026, 2, 1, tzinfo=timezone.utc), NOW),
        generated_at=NOW,
        highlights=["Strong revenue growth of 12.0% this period."],
        footer="Confidential",
        sections=[
            Section(
                "Revenue Summary", "metrics",
                MetricsContent([
                    MetricItem("Total Revenue", 125_000.0, "currency", "up", 12.0),
                    MetricItem("Transactions", 2_710, "number"),
                    MetricItem("Churn Rate", 0.031, "percentage", "down", 3.1),
                ]),
                metric="revenue_summary",
                data={"totalRevenue": 125_000.0, "totalTransactions": 2_710},
            ),
            Section(
                "Revenue by Stream", "table",
                TableContent(
                    headers=["Stream", "Revenue", "Transactions"],
                    rows=[["Dine In", 80_000.0, 1_700], ["Delivery", 45_000.0, 1_010]],
                    totals=["Total", 125_000.0, 2_710],
                ),
                metric="revenue_by_stream",
            ),
            Section("Pipeline", "text", {"error": "Unknown metric: pipeline"}, metric="pipeline"),
            Section("Notes", "text", "First paragraph.\n\nSecond paragraph."),
        ],
        charts=[ChartSpec("bar", ["Dine In", "Delivery"],
                          [{"label": "Revenue", "data": [80_000, 45_000]}],
                          {"title": "Revenue by Stream"})],
    )


class TestPdf:

    def test_writes_pdf(self, document, tmp_path):
        path = generate_pdf(document, tmp_path / "board.pdf", chart_dpi=50)
        assert path.exists()
        assert path.read_bytes().startswith(b"%PDF")

    def test_plain_header_without_branding(self, document, tmp_path):
        path = generate_pdf(document, tmp_path / "plain.pdf", branding=False, chart_dpi=50)
        assert path.stat().st_size > 0

    def test_empty_document(self, tmp_path):
        empty = Document(
            title="Empty",
            period=ReportPeriod(datetime(2026, 2, 1, tzinfo=timezone.utc), NOW),
            generated_at=NOW,
        )
        assert generate_pdf(empty, tmp_path / "empty.pdf").read_bytes().startswith(b"%PDF")


class TestWorkbook:

    def test_sheet_layout(self, document, tmp_path):
        path = generate_workbook(document, tmp_path / "board.xlsx")
        wb = load_workbook(path)
        assert wb.sheetnames == ["Summary", "Revenue Summary", "Revenue by Stream",
                                 "Pipeline", "Notes"]

    def test_table_sheet_and_totals(self, document, tmp_path):
        wb = load_workbook(generate_workbook(document, tmp_path / "board.xlsx"))
        ws = wb["Revenue by Stream"]
        assert [c.value for c in ws[3]] == ["Stream", "Revenue", "Transactions"]
        assert ws.cell(row=4, column=1).value == "Dine In"
        assert ws.cell(row=6, column=1).value == "Total"
        assert ws.cell(row=6, column=2).value == 125_000.0
        assert ws.cell(row=6, column=1).font.bold
        assert ws.cell(row=6, column=1).border.top.style == "thick"

    def test_metrics_sheet(self, document, tmp_path):
        wb = load_workbook(generate_workbook(document, tmp_path / "board.xlsx"))
        ws = wb["Revenue Summary"]
        assert ws.cell(row=3, column=1).value == "Key Metrics"
        assert ws.cell(row=5, column=1).value == "Total Revenue"
        assert ws.cell(row=5, column=3).value == "$125,000.00"
        values = [ws.cell(row=r, column=1).value for r in range(1, ws.max_row + 1)]
        assert "Detailed Data" in values

    def test_error_sheet(self, document, tmp_path):
        wb = load_workbook(generate_workbook(document, tmp_path / "board.xlsx"))
        assert wb["Pipeline"].cell(row=3, column=1).value == "Unknown metric: pipeline"

    def test_summary_index_links(self, document, tmp_path):
        wb = load_workbook(generate_workbook(document, tmp_path / "board.xlsx"))
        ws = wb["Summary"]
        cells = {ws.cell(row=r, column=1).value: r for r in range(1, ws.max_row + 1)}
        assert "Report Contents:" in cells
        row = cells["Revenue by Stream"]
        assert ws.cell(row=row, column=1).hyperlink is not None
        assert ws.cell(row=row, column=3).value == 2

    def test_sheet_title_rules(self):
        used = {"summary"}
        assert _sheet_title("Summary", used) == "Summary (2)"
        long = "A very long section title that exceeds the limit"
        first = _sheet_title(long, used)
        second = _sheet_title(long, used)
        assert len(first) <= 31 and len(second) <= 31
        assert first != second
        assert _sheet_title("Q1/Q2: [draft]?", used) == "Q1 Q2   draft"

    def test_record_count(self, document):
        counts = [record_count(s) for s in document.sections]
        assert counts == [3, 2, 0, 1]


class TestReportRenderer:

    def test_renders_both_formats(self, document, tmp_path):
        artifacts = ReportRenderer(tmp_path / "out", chart_dpi=50).render(document)
        assert [a.format for a in artifacts] == ["pdf", "xlsx"]
        for artifact in artifacts:
            assert artifact.path.parent == tmp_path / "out"
            assert artifact.size_bytes > 0
        assert artifacts[0].path.name.startswith("Monthly_Board_Pack_report_")

    def test_single_format(self, document, tmp_path):
        artifacts = ReportRenderer(tmp_path, formats=["xlsx"]).render(document)
        assert len(artifacts) == 1
        assert artifacts[0].path.suffix == ".xlsx"

    def test_unsupported_format(self, tmp_path):
        with pytest.raises(ValidationError):
            ReportRenderer(tmp_path, formats=["docx"])


class TestCurrency:

    @pytest.fixture
    def euro_document(self, document):
        document.currency = "EUR"
        return document

    def test_pdf_cards_use_document_currency(self, euro_document):
        section = euro_document.sections[0]
        brand = dict(BRAND_DEFAULTS)
        block = _section_block(1, section, _build_styles(brand), brand, euro_document.currency)
        grid = block[0]._content[1]
        assert grid._cellvalues[0][0][1].text == "EUR 125,000.00"

    def test_workbook_matches_pdf_currency(self, euro_document, tmp_path):
        wb = load_workbook(generate_workbook(euro_document, tmp_path / "board.xlsx"))
        ws = wb["Revenue Summary"]
        assert ws.cell(row=5, column=3).value == "EUR 125,000.00"
        assert ws.cell(row=5, column=2).number_format == '"EUR "#,##0.00'
        assert ws.cell(row=6, column=2).number_format == "#,##0"

    def test_usd_keeps_dollar_format(self, document, tmp_path):
        wb = load_workbook(generate_workbook(document, tmp_path / "board.xlsx"))
        assert wb["Revenue Summary"].cell(row=5, column=2).number_format == '"$"#,##0.00'

    def test_renderer_outputs_agree(self, euro_document, tmp_path):
        artifacts = ReportRenderer(tmp_path, formats=["xlsx"]).render(euro_document)
        ws = load_workbook(artifacts[0].path)["Revenue Summary"]
        assert ws.cell(row=5, column=3).value.startswith("EUR ")
