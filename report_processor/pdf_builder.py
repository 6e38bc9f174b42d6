"""
pdf_builder.py — Paginated PDF backend.

Lays out a `Document` with ReportLab's platypus engine:

    Header block  — company / title band, subtitle, period, generation date
    Highlights    — key highlight bullets (when any)
    Contents      — numbered section list plus the chart appendix
    Sections      — text paragraphs, tables with totals rows,
                    3-column metric card grids, error notices
    Appendix      — "Charts and Visualizations", one validated PNG per chart

Every page carries a running header and a footer with "Page i of n".
Charts are rasterised through BytesIO; no temp files are written.
"""

import io
import logging
from pathlib import Path
from typing import Any
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_LEFT, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas as rl_canvas
from reportlab.platypus import (
    BaseDocTemplate,
    Frame,
    Image,
    KeepTogether,
    PageTemplate,
    Paragraph,
    Spacer,
    Table,
    TableStyle,
)
from reportlab.platypus.flowables import HRFlowable

from report_processor.charts import DEFAULT_BRAND, render_validated_chart
from report_processor.document import Document, MetricItem, Section, TableContent, format_cell, format_metric_value

logger = logging.getLogger(__name__)

PAGE_W, PAGE_H = A4
MARGIN = 1.8 * cm
CONTENT_W = PAGE_W - 2 * MARGIN
CARDS_PER_ROW = 3
CHART_APPENDIX_TITLE = "Charts and Visualizations"

BRAND_DEFAULTS: dict[str, str] = {
    **DEFAULT_BRAND,
    "light": "EBF5FB",
    "green": "27AE60",
    "amber": "F39C12",
    "red": "C0392B",
}


def _hex(h: str):
    """Convert a hex colour string to ReportLab Color."""
    h = h.lstrip("#")
    r, g, b = int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16)
    return colors.Color(r / 255, g / 255, b / 255)


# ---------------------------------------------------------------------------
# Stylesheet
# ---------------------------------------------------------------------------

def _build_styles(brand: dict) -> dict[str, ParagraphStyle]:
    """Create all paragraph styles used in the report.

    Args:
        brand: Brand colour dict from config.

    Returns:
        Dict of named ParagraphStyle objects.
    """
    primary = _hex(brand["primary"])
    text_col = _hex(brand["text"])
    white = colors.white

    styles = {}

    styles["band_title"] = ParagraphStyle(
        "band_title",
        fontName="Helvetica-Bold",
        fontSize=22,
        textColor=white,
        alignment=TA_LEFT,
        leading=27,
    )
    styles["band_company"] = ParagraphStyle(
        "band_company",
        fontName="Helvetica",
        fontSize=10,
        textColor=colors.Color(0.8, 0.88, 0.95),
        alignment=TA_LEFT,
        spaceAfter=4,
    )
    styles["title_plain"] = ParagraphStyle(
        "title_plain",
        fontName="Helvetica-Bold",
        fontSize=22,
        textColor=primary,
        leading=27,
        spaceAfter=4,
    )
    styles["subtitle"] = ParagraphStyle(
        "subtitle",
        fontName="Helvetica",
        fontSize=12,
        textColor=text_col,
        spaceBefore=6,
        spaceAfter=2,
    )
    styles["meta"] = ParagraphStyle(
        "meta",
        fontName="Helvetica",
        fontSize=8.5,
        textColor=colors.grey,
        spaceAfter=2,
    )
    styles["section_title"] = ParagraphStyle(
        "section_title",
        fontName="Helvetica-Bold",
        fontSize=14,
        textColor=primary,
        spaceBefore=10,
        spaceAfter=6,
    )
    styles["subsection_title"] = ParagraphStyle(
        "subsection_title",
        fontName="Helvetica-Bold",
        fontSize=11,
        textColor=primary,
        spaceBefore=8,
        spaceAfter=4,
    )
    styles["body"] = ParagraphStyle(
        "body",
        fontName="Helvetica",
        fontSize=9.5,
        textColor=text_col,
        leading=14,
        spaceAfter=6,
    )
    styles["bullet"] = ParagraphStyle(
        "bullet",
        parent=styles["body"],
        leftIndent=12,
        bulletIndent=2,
        spaceAfter=3,
    )
    styles["toc_entry"] = ParagraphStyle(
        "toc_entry",
        fontName="Helvetica",
        fontSize=9.5,
        textColor=text_col,
        leftIndent=8,
        spaceAfter=2,
    )
    styles["error"] = ParagraphStyle(
        "error",
        fontName="Helvetica-Oblique",
        fontSize=9,
        textColor=_hex(brand["red"]),
        leading=12,
    )
    styles["caption"] = ParagraphStyle(
        "caption",
        fontName="Helvetica-Oblique",
        fontSize=8,
        textColor=colors.grey,
        alignment=TA_CENTER,
        spaceAfter=10,
    )
    styles["kpi_label"] = ParagraphStyle(
        "kpi_label",
        fontName="Helvetica",
        fontSize=8,
        textColor=colors.grey,
        alignment=TA_CENTER,
        spaceAfter=1,
    )
    styles["kpi_value"] = ParagraphStyle(
        "kpi_value",
        fontName="Helvetica-Bold",
        fontSize=14,
        leading=18,
        textColor=primary,
        alignment=TA_CENTER,
    )
    styles["kpi_trend"] = ParagraphStyle(
        "kpi_trend",
        fontName="Helvetica-Bold",
        fontSize=8,
        alignment=TA_CENTER,
    )
    styles["table_header"] = ParagraphStyle(
        "table_header",
        fontName="Helvetica-Bold",
        fontSize=8.5,
        textColor=white,
        alignment=TA_CENTER,
    )
    styles["table_cell"] = ParagraphStyle(
        "table_cell",
        fontName="Helvetica",
        fontSize=8.5,
        textColor=text_col,
        leading=11,
    )
    styles["table_num"] = ParagraphStyle(
        "table_num",
        parent=styles["table_cell"],
        alignment=TA_RIGHT,
    )
    return styles


# ---------------------------------------------------------------------------
# Page decoration
# ---------------------------------------------------------------------------

class _HeaderFooterCanvas:
    """Running header and footer drawn on every page."""

    def __init__(self, brand: dict, company_name: str, title: str, footer: str):
        self.brand = brand
        self.company_name = company_name
        self.title = title
        self.footer = footer

    def draw_header_footer(self, canvas, doc):
        canvas.saveState()
        if doc.page > 1:
            canvas.setFillColor(_hex(self.brand["primary"]))
            canvas.rect(0, PAGE_H - 1.0 * cm, PAGE_W, 1.0 * cm, fill=1, stroke=0)
            canvas.setFont("Helvetica-Bold", 8.5)
            canvas.setFillColor(colors.white)
            canvas.drawString(MARGIN, PAGE_H - 0.65 * cm, self.company_name or self.title)
            canvas.setFont("Helvetica", 8.5)
            canvas.drawRightString(PAGE_W - MARGIN, PAGE_H - 0.65 * cm, self.title)

        canvas.setStrokeColor(_hex(self.brand["primary"]))
        canvas.setLineWidth(0.5)
        canvas.line(MARGIN, 1.2 * cm, PAGE_W - MARGIN, 1.2 * cm)
        if self.footer:
            canvas.setFont("Helvetica", 7.5)
            canvas.setFillColor(colors.grey)
            canvas.drawString(MARGIN, 0.7 * cm, self.footer)
        canvas.restoreState()


class _NumberedCanvas(rl_canvas.Canvas):
    """Canvas that defers page output so the footer can show the page total."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._saved_pages: list[dict] = []

    def showPage(self):
        self._saved_pages.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total = len(self._saved_pages)
        for state in self._saved_pages:
            self.__dict__.update(state)
            self.setFont("Helvetica", 7.5)
            self.setFillColor(colors.grey)
            self.drawRightString(PAGE_W - MARGIN, 0.7 * cm, f"Page {self._pageNumber} of {total}")
            super().showPage()
        super().save()


# ---------------------------------------------------------------------------
# Block builders
# ---------------------------------------------------------------------------

def _header_block(document: Document, styles: dict, brand: dict, branding: bool) -> list:
    """Title band (branded) or plain title, then subtitle and dates."""
    story = []
    title = escape(document.title)
    if branding:
        band_content = []
        if document.company_name:
            band_content.append(Paragraph(escape(document.company_name), styles["band_company"]))
        band_content.append(Paragraph(title, styles["band_title"]))
        band = Table([[band_content]], colWidths=[CONTENT_W])
        band.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (0, 0), _hex(brand["primary"])),
            ("LEFTPADDING", (0, 0), (0, 0), 14),
            ("TOPPADDING", (0, 0), (0, 0), 14),
            ("BOTTOMPADDING", (0, 0), (0, 0), 14),
        ]))
        story.append(band)
    else:
        story.append(Paragraph(title, styles["title_plain"]))

    if document.subtitle:
        story.append(Paragraph(escape(document.subtitle), styles["subtitle"]))
    story.append(Spacer(1, 0.2 * cm))
    story.append(Paragraph(f"Reporting period: {escape(document.period.label)}", styles["meta"]))
    story.append(Paragraph(
        f"Generated: {document.generated_at.strftime('%A, %d %B %Y at %H:%M %Z').strip()}",
        styles["meta"],
    ))
    story.append(HRFlowable(width=CONTENT_W, thickness=1, color=_hex(brand["primary"]),
                            spaceBefore=6, spaceAfter=8))
    return story


def _highlights_block(highlights: list[str], styles: dict) -> list:
    if not highlights:
        return []
    story = [Paragraph("Key Highlights", styles["subsection_title"])]
    for line in highlights:
        story.append(Paragraph(escape(line), styles["bullet"], bulletText="•"))
    story.append(Spacer(1, 0.3 * cm))
    return story


def _toc_block(document: Document, styles: dict) -> list:
    story = [Paragraph("Contents", styles["subsection_title"])]
    for i, section in enumerate(document.sections, start=1):
        story.append(Paragraph(f"{i}. {escape(section.title)}", styles["toc_entry"]))
    if document.charts:
        n = len(document.sections) + 1
        story.append(Paragraph(f"{n}. {CHART_APPENDIX_TITLE}", styles["toc_entry"]))
    story.append(Spacer(1, 0.4 * cm))
    return story


def _table_flowable(content: TableContent, styles: dict, brand: dict) -> Table:
    """Header row, body rows, and a bold totals row over a thick rule."""
    n_cols = max(len(content.headers), 1)
    small = n_cols > 6

    def cell(value: Any, bold: bool = False) -> Paragraph:
        style = styles["table_num"] if isinstance(value, (int, float)) else styles["table_cell"]
        text = escape(format_cell(value))
        if bold:
            text = f"<b>{text}</b>"
        if small:
            style = ParagraphStyle(f"{style.name}_small", parent=style, fontSize=6.5, leading=8)
        return Paragraph(text, style)

    data = [[Paragraph(escape(h), styles["table_header"]) for h in content.headers]]
    data += [[cell(v) for v in row] for row in content.rows]
    if content.totals is not None:
        data.append([cell(v, bold=True) for v in content.totals])

    table = Table(data, colWidths=[CONTENT_W / n_cols] * n_cols, repeatRows=1)
    ts = TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), _hex(brand["primary"])),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("GRID", (0, 0), (-1, -1), 0.4, colors.lightgrey),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
        ("LEFTPADDING", (0, 0), (-1, -1), 4),
        ("RIGHTPADDING", (0, 0), (-1, -1), 4),
    ])
    for row_idx in range(2, len(content.rows) + 1, 2):
        ts.add("BACKGROUND", (0, row_idx), (-1, row_idx), _hex(brand["light"]))
    if content.totals is not None:
        ts.add("LINEABOVE", (0, -1), (-1, -1), 1.5, _hex(brand["primary"]))
        ts.add("BACKGROUND", (0, -1), (-1, -1), _hex(brand["light"]))
    table.setStyle(ts)
    return table


def _trend_markup(item: MetricItem, brand: dict) -> str:
    if item.trend is None:
        return ""
    colour = {"up": brand["green"], "down": brand["red"]}.get(item.trend, "808080")
    sign = {"up": "+", "down": "-"}.get(item.trend, "")
    amount = f"{sign}{item.trend_value:.1f}%" if item.trend_value is not None else item.trend
    return f'<font color="#{colour.lstrip("#")}">{amount}</font>'


def _metrics_grid(items: list[MetricItem], styles: dict, brand: dict,
                  currency: str = "USD") -> Table:
    """Metric cards, CARDS_PER_ROW per row."""
    rows = []
    for start in range(0, len(items), CARDS_PER_ROW):
        chunk = items[start:start + CARDS_PER_ROW]
        row = []
        for item in chunk:
            row.append([
                Paragraph(escape(item.label), styles["kpi_label"]),
                Paragraph(escape(format_metric_value(item.value, item.format, currency)),
                          styles["kpi_value"]),
                Paragraph(_trend_markup(item, brand), styles["kpi_trend"]),
            ])
        row += [""] * (CARDS_PER_ROW - len(chunk))
        rows.append(row)

    col_w = CONTENT_W / CARDS_PER_ROW
    table = Table(rows, colWidths=[col_w] * CARDS_PER_ROW)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, -1), _hex(brand["light"])),
        ("GRID", (0, 0), (-1, -1), 2, colors.white),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("TOPPADDING", (0, 0), (-1, -1), 8),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 8),
    ]))
    return table


def _section_block(number: int, section: Section, styles: dict, brand: dict,
                   currency: str = "USD") -> list:
    heading = Paragraph(f"{number}. {escape(section.title)}", styles["section_title"])

    if section.is_error:
        notice = Table([[Paragraph(escape(section.error), styles["error"])]], colWidths=[CONTENT_W])
        notice.setStyle(TableStyle([
            ("BOX", (0, 0), (-1, -1), 0.8, _hex(brand["red"])),
            ("BACKGROUND", (0, 0), (-1, -1), colors.Color(1, 0.95, 0.95)),
            ("LEFTPADDING", (0, 0), (-1, -1), 8),
            ("TOPPADDING", (0, 0), (-1, -1), 6),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
        ]))
        return [KeepTogether([heading, notice])]

    if section.type == "text":
        story = [heading]
        for para in str(section.content).split("\n\n"):
            if para.strip():
                story.append(Paragraph(escape(para.strip()), styles["body"]))
        return story

    if section.type == "table":
        return [heading, _table_flowable(section.content, styles, brand)]

    return [KeepTogether([heading, _metrics_grid(section.content.metrics, styles, brand, currency)])]


def _chart_appendix(document: Document, styles: dict, brand: dict, dpi: int) -> list:
    if not document.charts:
        return []
    n = len(document.sections) + 1
    story = [Paragraph(f"{n}. {CHART_APPENDIX_TITLE}", styles["section_title"])]
    for i, spec in enumerate(document.charts, start=1):
        png = render_validated_chart(spec, dpi=dpi, brand=brand)
        image = Image(io.BytesIO(png), width=CONTENT_W * 0.98, height=CONTENT_W * 0.98 * 3.5 / 8)
        caption = Paragraph(f"Fig {i}: {escape(spec.title)}", styles["caption"])
        story.append(KeepTogether([image, caption]))
    return story


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def generate_pdf(
    document: Document,
    output_path: Path,
    brand: dict | None = None,
    branding: bool = True,
    chart_dpi: int = 150,
) -> Path:
    """Lay out and write `document` as a PDF.

    Args:
        document: Populated document.
        output_path: Already validated destination path.
        brand: Brand colour overrides (hex strings).
        branding: Draw the coloured title band.
        chart_dpi: Resolution for embedded charts.

    Returns:
        Path to the written file.
    """
    brand = {**BRAND_DEFAULTS, **(brand or {})}
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    styles = _build_styles(brand)
    hf = _HeaderFooterCanvas(brand, document.company_name, document.title, document.footer)

    def on_page(canvas, doc):
        hf.draw_header_footer(canvas, doc)

    doc = BaseDocTemplate(
        str(output_path),
        pagesize=A4,
        leftMargin=MARGIN,
        rightMargin=MARGIN,
        topMargin=1.6 * cm,
        bottomMargin=1.8 * cm,
        title=document.title,
        author=document.company_name,
    )
    content_frame = Frame(MARGIN, 1.6 * cm, CONTENT_W, PAGE_H - 3.0 * cm)
    doc.addPageTemplates([PageTemplate(id="Content", frames=[content_frame], onPage=on_page)])

    story = []
    story += _header_block(document, styles, brand, branding)
    story += _highlights_block(document.highlights, styles)
    story += _toc_block(document, styles)
    for i, section in enumerate(document.sections, start=1):
        story += _section_block(i, section, styles, brand, document.currency)
    story += _chart_appendix(document, styles, brand, chart_dpi)

    doc.build(story, canvasmaker=_NumberedCanvas)
    logger.info("PDF report saved to %s (%d section(s), %d chart(s))",
                output_path, len(document.sections), len(document.charts))
    return output_path
