"""
excel_pack.py — Workbook backend.

Writes the same `Document` the PDF backend consumes as an .xlsx workbook,
the analyst's companion to the PDF:

    Summary        — title, company, period, key highlights and an index
                     of every following sheet (hyperlinked, with record counts)
    <one per section>
                   — tables: styled header, rows, bold totals row
                     metrics: "Key Metrics" block then "Detailed Data"
                     text / errors: wrapped paragraphs

Every sheet has auto-sized columns and an A4, fit-to-width print setup.
"""

import logging
import re
from pathlib import Path
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from report_processor.document import Document, Section, format_metric_value
from report_processor.pdf_builder import BRAND_DEFAULTS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Styling helpers
# ---------------------------------------------------------------------------

THIN = Side(style="thin")
THICK = Side(style="thick")
THIN_BORDER = Border(left=THIN, right=THIN, top=THIN, bottom=THIN)
TOTALS_BORDER = Border(left=THIN, right=THIN, top=THICK, bottom=THIN)

MIN_COL_WIDTH = 10
MAX_COL_WIDTH = 30

_NUMBER_FORMATS = {
    "percentage": "0.0%",
    "number": "#,##0",
}
_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")


def _number_format(fmt: str, currency: str = "USD") -> str | None:
    """Excel format code that displays like `format_metric_value`."""
    if fmt == "currency":
        symbol = "$" if currency == "USD" else f"{currency} "
        return f'"{symbol}"#,##0.00'
    return _NUMBER_FORMATS.get(fmt)


def _fill(hex_colour: str) -> PatternFill:
    return PatternFill(fill_type="solid", fgColor=hex_colour.lstrip("#"))


def _font(bold: bool = False, colour: str = "000000", size: int = 10,
          italic: bool = False) -> Font:
    return Font(name="Calibri", bold=bold, color=colour.lstrip("#"),
                size=size, italic=italic)


def _center() -> Alignment:
    return Alignment(horizontal="center", vertical="center", wrap_text=False)


def _auto_fit(ws, min_w: int = MIN_COL_WIDTH, max_w: int = MAX_COL_WIDTH) -> None:
    for col in ws.columns:
        max_len = max(
            (len(str(cell.value)) if cell.value is not None else 0 for cell in col), default=0
        )
        ws.column_dimensions[get_column_letter(col[0].column)].width = \
            min(max(max_len + 2, min_w), max_w)


def _write_header_row(ws, row: int, headers: list[str], brand: dict) -> None:
    """Write a formatted header row at the given row index."""
    primary = brand["primary"].lstrip("#")
    for col_i, h in enumerate(headers, start=1):
        cell = ws.cell(row=row, column=col_i, value=h)
        cell.fill = _fill(primary)
        cell.font = _font(bold=True, colour="FFFFFF", size=10)
        cell.alignment = _center()
        cell.border = THIN_BORDER
    ws.row_dimensions[row].height = 20


def _print_setup(ws) -> None:
    ws.page_setup.paperSize = ws.PAPERSIZE_A4
    ws.page_setup.fitToWidth = 1
    ws.page_setup.fitToHeight = 0
    ws.sheet_properties.pageSetUpPr.fitToPage = True


def _title_row(ws, title: str, brand: dict, width: int = 4) -> None:
    ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=max(width, 1))
    cell = ws.cell(row=1, column=1, value=title)
    cell.fill = _fill(brand["primary"])
    cell.font = _font(bold=True, colour="FFFFFF", size=14)
    cell.alignment = Alignment(horizontal="left", vertical="center")
    ws.row_dimensions[1].height = 26


def _sheet_title(title: str, used: set[str]) -> str:
    """Excel-safe, unique sheet name (max 31 chars)."""
    base = _INVALID_SHEET_CHARS.sub(" ", title).strip().strip("'") or "Sheet"
    base = base[:31]
    name, n = base, 2
    while name.lower() in used:
        suffix = f" ({n})"
        name = base[:31 - len(suffix)] + suffix
        n += 1
    used.add(name.lower())
    return name


def record_count(section: Section) -> int:
    """Records a section contributes to the workbook index."""
    if section.is_error:
        return 0
    if section.type == "table":
        return len(section.content.rows)
    if section.type == "metrics":
        return len(section.content.metrics)
    return 1


def _scalar_items(data: Any, prefix: str = "") -> list[tuple[str, Any]]:
    """Flatten the scalar leaves of a metric's raw data for 'Detailed Data'."""
    items = []
    if isinstance(data, dict):
        for key, value in data.items():
            items += _scalar_items(value, f"{prefix}{key}." if isinstance(value, dict) else f"{prefix}{key}")
    elif isinstance(data, (int, float, str, bool)) or data is None:
        items.append((prefix.rstrip("."), data))
    return items


# ---------------------------------------------------------------------------
# Sheet builders
# ---------------------------------------------------------------------------

def _sheet_summary(ws, document: Document, index: list[tuple[str, Section]], brand: dict) -> None:
    """Title block, highlights and the hyperlinked sheet index."""
    ws.sheet_properties.tabColor = brand["primary"].lstrip("#")
    _title_row(ws, document.title, brand)

    meta = [
        ("Company", document.company_name),
        ("Generated", document.generated_at.strftime("%Y-%m-%d %H:%M %Z").strip()),
        ("Period", document.period.label),
    ]
    if document.subtitle:
        meta.insert(0, ("Subtitle", document.subtitle))
    row = 3
    for label, value in meta:
        ws.cell(row=row, column=1, value=label).font = _font(bold=True, size=9)
        ws.cell(row=row, column=2, value=value).font = _font(size=9)
        row += 1

    if document.highlights:
        row += 1
        ws.cell(row=row, column=1, value="Key Highlights").font = _font(bold=True, colour=brand["primary"], size=11)
        row += 1
        for line in document.highlights:
            ws.cell(row=row, column=1, value=f"• {line}").font = _font(size=9)
            row += 1

    row += 1
    ws.cell(row=row, column=1, value="Report Contents:").font = _font(bold=True, colour=brand["primary"], size=11)
    row += 1
    _write_header_row(ws, row, ["Sheet", "Section", "Records"], brand)
    for sheet_name, section in index:
        row += 1
        link = ws.cell(row=row, column=1, value=sheet_name)
        link.hyperlink = f"#'{sheet_name}'!A1"
        link.font = Font(name="Calibri", size=9, color="0563C1", underline="single")
        link.border = THIN_BORDER
        c = ws.cell(row=row, column=2, value=section.title)
        c.font = _font(size=9)
        c.border = THIN_BORDER
        c = ws.cell(row=row, column=3, value=record_count(section))
        c.font = _font(size=9)
        c.border = THIN_BORDER
        c.alignment = _center()

    _auto_fit(ws)
    ws.column_dimensions["A"].width = MAX_COL_WIDTH
    _print_setup(ws)


def _sheet_table(ws, section: Section, brand: dict) -> None:
    content = section.content
    width = len(content.headers)
    _title_row(ws, section.title, brand, width)
    _write_header_row(ws, 3, content.headers, brand)
    ws.freeze_panes = "A4"
    ws.auto_filter.ref = f"A3:{get_column_letter(width)}3"

    for row_i, values in enumerate(content.rows, start=4):
        row_fill = "F9F9F9" if row_i % 2 == 0 else "FFFFFF"
        for col_i, val in enumerate(values, start=1):
            c = ws.cell(row=row_i, column=col_i, value=val)
            c.font = _font(size=9)
            c.border = THIN_BORDER
            c.fill = _fill(row_fill)
            if isinstance(val, float):
                c.number_format = "#,##0.00"
            elif isinstance(val, int) and not isinstance(val, bool):
                c.number_format = "#,##0"

    if content.totals is not None:
        totals_row = 4 + len(content.rows)
        for col_i, val in enumerate(content.totals, start=1):
            c = ws.cell(row=totals_row, column=col_i, value=val)
            c.font = _font(bold=True, size=9)
            c.border = TOTALS_BORDER
            c.fill = _fill(brand["light"])
            if isinstance(val, float):
                c.number_format = "#,##0.00"
            elif isinstance(val, int) and not isinstance(val, bool):
                c.number_format = "#,##0"


def _sheet_metrics(ws, section: Section, brand: dict, currency: str = "USD") -> None:
    _title_row(ws, section.title, brand, 4)
    ws.cell(row=3, column=1, value="Key Metrics").font = _font(bold=True, colour=brand["primary"], size=11)
    _write_header_row(ws, 4, ["Metric", "Value", "Display", "Trend"], brand)

    row = 5
    for item in section.content.metrics:
        ws.cell(row=row, column=1, value=item.label)
        value_cell = ws.cell(row=row, column=2, value=item.value)
        number_format = _number_format(item.format, currency)
        if number_format and isinstance(item.value, (int, float)):
            value_cell.number_format = number_format
        ws.cell(row=row, column=3, value=format_metric_value(item.value, item.format, currency))
        trend = ""
        if item.trend:
            trend = item.trend if item.trend_value is None else f"{item.trend} {item.trend_value:.1f}%"
        ws.cell(row=row, column=4, value=trend)
        for col_i in range(1, 5):
            c = ws.cell(row=row, column=col_i)
            c.font = _font(size=9)
            c.border = THIN_BORDER
        row += 1

    details = _scalar_items(section.data)
    if details:
        row += 1
        ws.cell(row=row, column=1, value="Detailed Data").font = _font(bold=True, colour=brand["primary"], size=11)
        row += 1
        _write_header_row(ws, row, ["Field", "Value"], brand)
        for key, value in details:
            row += 1
            for col_i, val in enumerate((key, value), start=1):
                c = ws.cell(row=row, column=col_i, value=val)
                c.font = _font(size=9)
                c.border = THIN_BORDER


def _sheet_text(ws, section: Section, brand: dict) -> None:
    _title_row(ws, section.title, brand, 4)
    if section.is_error:
        c = ws.cell(row=3, column=1, value=section.error)
        c.font = _font(italic=True, colour=brand["red"], size=10)
        return
    row = 3
    for para in str(section.content).split("\n\n"):
        if para.strip():
            c = ws.cell(row=row, column=1, value=para.strip())
            c.alignment = Alignment(wrap_text=True, vertical="top")
            c.font = _font(size=10)
            row += 1


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def generate_workbook(
    document: Document,
    output_path: Path,
    brand: dict | None = None,
) -> Path:
    """Build the workbook for `document` and write it to `output_path`.

    Args:
        document: Populated document.
        output_path: Already validated destination path.
        brand: Brand colour overrides (hex strings).

    Returns:
        Path to the generated .xlsx file.
    """
    brand = {**BRAND_DEFAULTS, **(brand or {})}
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    wb = Workbook()
    summary = wb.active
    summary.title = "Summary"
    used = {"summary"}

    index: list[tuple[str, Section]] = []
    for section in document.sections:
        name = _sheet_title(section.title, used)
        ws = wb.create_sheet(name)
        if section.is_error or section.type == "text":
            _sheet_text(ws, section, brand)
        elif section.type == "table":
            _sheet_table(ws, section, brand)
        else:
            _sheet_metrics(ws, section, brand, document.currency)
        _auto_fit(ws)
        _print_setup(ws)
        index.append((name, section))
        logger.debug("Built sheet: %s", name)

    _sheet_summary(summary, document, index, brand)

    wb.save(output_path)
    logger.info("Excel workbook saved to %s (%d sheet(s))", output_path, len(wb.sheetnames))
    return output_path
