"""
charts.py — ChartSpec rasteriser and image validation.

Charts travel through the pipeline as declarative `ChartSpec` objects and
are only turned into pixels here, with matplotlib's Agg backend. Every
image passes through BytesIO; nothing is written to disk.

Before a buffer is embedded in a document or returned to a caller it is
checked against the magic bytes of the format it claims to be:

    PNG   89 50 4E 47 0D 0A 1A 0A
    JPEG  FF D8 FF
    GIF   47 49 46 38 (37|39) 61
"""

import io
import logging

import matplotlib
matplotlib.use("Agg")  # non-interactive backend, no display needed
import matplotlib.pyplot as plt
import numpy as np

from report_processor.document import ChartSpec
from report_processor.errors import ContentValidationError, ValidationError
from report_processor.models import CHART_KINDS

logger = logging.getLogger(__name__)

_SIGNATURES: dict[str, tuple[bytes, ...]] = {
    "png": (b"\x89PNG\r\n\x1a\n",),
    "jpeg": (b"\xff\xd8\xff",),
    "gif": (b"GIF87a", b"GIF89a"),
}
_SIGNATURES["jpg"] = _SIGNATURES["jpeg"]

DEFAULT_BRAND = {
    "primary": "1F3864",
    "secondary": "2196A6",
    "accent": "E74C3C",
    "text": "2C3E50",
}


def _mpl_hex(h: str) -> str:
    """Return hex with # for matplotlib."""
    return f"#{h.lstrip('#')}"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_image_buffer(buf: bytes, fmt: str = "png") -> bytes:
    """Check that `buf` is a non-empty image of the declared format.

    Args:
        buf: Raw bytes.
        fmt: png | jpeg | jpg | gif.

    Returns:
        The same buffer, unchanged.

    Raises:
        ContentValidationError: Empty buffer, unknown format or bad signature.
    """
    signatures = _SIGNATURES.get(fmt.lower())
    if signatures is None:
        raise ContentValidationError(f"Unsupported image format: {fmt}")
    if not buf:
        raise ContentValidationError("Image buffer is empty")
    if not any(buf.startswith(sig) for sig in signatures):
        raise ContentValidationError(f"Buffer is not a valid {fmt.upper()} image")
    return buf


# ---------------------------------------------------------------------------
# Rasterising
# ---------------------------------------------------------------------------

def _series(spec: ChartSpec) -> list[tuple[str, list[float], str | None]]:
    out = []
    for ds in spec.datasets:
        values = [float(v) if v is not None else np.nan for v in ds.get("data", [])]
        out.append((str(ds.get("label", "")), values, ds.get("color")))
    return out


def _draw_line(ax, spec, brand):
    x = np.arange(len(spec.labels))
    for label, values, colour in _series(spec):
        ax.plot(x[:len(values)], values, marker="o", markersize=4, linewidth=2,
                label=label, color=colour)
    ax.set_xticks(x)
    ax.set_xticklabels(spec.labels, rotation=45, ha="right", fontsize=7.5)
    ax.grid(axis="y", linestyle="--", alpha=0.3)


def _draw_bar(ax, spec, brand):
    series = _series(spec)
    x = np.arange(len(spec.labels))
    width = 0.8 / max(len(series), 1)
    for i, (label, values, colour) in enumerate(series):
        offset = (i - (len(series) - 1) / 2) * width
        ax.bar(x[:len(values)] + offset, values, width, label=label,
               color=colour, alpha=0.9, zorder=3)
    ax.set_xticks(x)
    ax.set_xticklabels(spec.labels, rotation=45, ha="right", fontsize=7.5)
    ax.grid(axis="y", linestyle="--", alpha=0.4, zorder=0)


def _draw_scatter(ax, spec, brand):
    x = np.arange(len(spec.labels))
    for label, values, colour in _series(spec):
        ax.scatter(x[:len(values)], values, label=label, color=colour, s=24, zorder=3)
    ax.set_xticks(x)
    ax.set_xticklabels(spec.labels, rotation=45, ha="right", fontsize=7.5)
    ax.grid(linestyle="--", alpha=0.3)


def _draw_pie(ax, spec, brand, hole: float = 0.0):
    series = _series(spec)
    values = [0.0 if np.isnan(v) else max(v, 0.0) for v in (series[0][1] if series else [])]
    if not values or sum(values) == 0:
        ax.text(0.5, 0.5, "No data", ha="center", va="center", transform=ax.transAxes)
        ax.axis("off")
        return
    wedge = {"width": 1 - hole} if hole else None
    ax.pie(values, labels=spec.labels[:len(values)], autopct="%1.0f%%",
           startangle=90, wedgeprops=wedge, textprops={"fontsize": 8})
    ax.axis("equal")


_DRAWERS = {
    "line": _draw_line,
    "bar": _draw_bar,
    "scatter": _draw_scatter,
    "pie": _draw_pie,
    "doughnut": lambda ax, spec, brand: _draw_pie(ax, spec, brand, hole=0.45),
}


def render_chart(
    spec: ChartSpec,
    width_in: float = 8.0,
    height_in: float = 3.5,
    dpi: int = 150,
    brand: dict | None = None,
) -> bytes:
    """Rasterise a ChartSpec to PNG bytes.

    Args:
        spec: Declarative chart description.
        width_in: Figure width in inches.
        height_in: Figure height in inches.
        dpi: Output resolution.
        brand: Brand colour dict (hex strings without #).

    Returns:
        PNG-encoded bytes.

    Raises:
        ValidationError: If the chart type cannot be drawn.
    """
    if spec.type not in CHART_KINDS:
        raise ValidationError(f"Cannot rasterise chart type {spec.type!r}")
    brand = {**DEFAULT_BRAND, **(brand or {})}

    fig, ax = plt.subplots(figsize=(width_in, height_in))
    try:
        fig.patch.set_facecolor("white")
        ax.set_facecolor("white")
        _DRAWERS[spec.type](ax, spec, brand)

        if spec.type not in ("pie", "doughnut"):
            ax.spines[["top", "right"]].set_visible(False)
            if spec.options.get("y_label"):
                ax.set_ylabel(spec.options["y_label"], fontsize=8)
            if len(spec.datasets) > 1:
                ax.legend(fontsize=8, framealpha=0.5)
        if spec.title:
            ax.set_title(spec.title, fontsize=10, color=_mpl_hex(brand["primary"]),
                         fontweight="bold", pad=8)
        fig.tight_layout()

        buf = io.BytesIO()
        fig.savefig(buf, format="png", dpi=dpi, bbox_inches="tight",
                    facecolor=fig.get_facecolor())
    finally:
        plt.close(fig)
    data = buf.getvalue()
    logger.debug("Rendered %s chart %r (%d bytes)", spec.type, spec.title, len(data))
    return data


def render_validated_chart(spec: ChartSpec, **kwargs) -> bytes:
    """Rasterise and verify the PNG signature before handing bytes out."""
    return validate_image_buffer(render_chart(spec, **kwargs), "png")
