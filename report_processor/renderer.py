"""
renderer.py — Render one Document into every configured output format.

Both backends receive the very same Document instance. File names are
resolved through the output path contract before anything is written.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from report_processor.document import Document
from report_processor.errors import ReportProcessorError, TransientGenerationError, ValidationError
from report_processor.excel_pack import generate_workbook
from report_processor.output_paths import build_output_path
from report_processor.pdf_builder import generate_pdf

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("pdf", "xlsx")


@dataclass
class Artifact:
    format: str
    path: Path

    @property
    def size_bytes(self) -> int:
        return self.path.stat().st_size if self.path.exists() else 0


class ReportRenderer:
    """Writes PDF and XLSX artifacts for a Document into `output_dir`."""

    def __init__(
        self,
        output_dir: Path | str,
        formats: tuple[str, ...] | list[str] = SUPPORTED_FORMATS,
        brand: dict | None = None,
        branding: bool = True,
        chart_dpi: int = 150,
    ):
        unknown = [f for f in formats if f not in SUPPORTED_FORMATS]
        if unknown or not formats:
            raise ValidationError(f"Unsupported output format(s): {unknown or formats}")
        self.output_dir = Path(output_dir)
        self.formats = tuple(formats)
        self.brand = brand or {}
        self.branding = branding
        self.chart_dpi = chart_dpi

    def render(self, document: Document, when: datetime | None = None) -> list[Artifact]:
        """Render `document` to each configured format.

        Raises:
            ContentSafetyError: Output path or chart buffer failed validation.
            TransientGenerationError: A backend failed while writing.
        """
        when = when or document.generated_at
        self.output_dir.mkdir(parents=True, exist_ok=True)
        artifacts = []
        for fmt in self.formats:
            path = build_output_path(self.output_dir, document.title, fmt, when)
            try:
                if fmt == "pdf":
                    generate_pdf(document, path, brand=self.brand,
                                 branding=self.branding, chart_dpi=self.chart_dpi)
                else:
                    generate_workbook(document, path, brand=self.brand)
            except ReportProcessorError:
                raise
            except Exception as exc:
                raise TransientGenerationError(f"{fmt.upper()} rendering failed: {exc}") from exc
            artifacts.append(Artifact(fmt, path))
        logger.info("Rendered %s: %s", document.title,
                    ", ".join(a.path.name for a in artifacts))
        return artifacts
