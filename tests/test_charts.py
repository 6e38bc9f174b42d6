"""
test_charts.py — Unit tests for chart rasterising and image validation.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from report_processor.charts import render_chart, render_validated_chart, validate_image_buffer
from report_processor.document import ChartSpec
from report_processor.errors import ContentValidationError, ValidationError

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def _spec(kind, datasets=None):
    return ChartSpec(
        type=kind,
        labels=["Jan", "Feb", "Mar"],
        datasets=datasets or [{"label": "Revenue", "data": [10, 12, 15]},
                              {"label": "Net", "data": [9, 11, 14]}],
        options={"title": f"{kind} chart", "y_label": "USD"},
    )


class TestValidateImageBuffer:

    def test_accepts_png(self):
        buf = PNG_MAGIC + b"rest"
        assert validate_image_buffer(buf, "png") is buf

    def test_accepts_jpeg_and_gif(self):
        validate_image_buffer(b"\xff\xd8\xff\xe0data", "jpeg")
        validate_image_buffer(b"\xff\xd8\xff\xe0data", "jpg")
        validate_image_buffer(b"GIF89a....", "gif")
        validate_image_buffer(b"GIF87a....", "GIF")

    def test_rejects_non_image(self):
        with pytest.raises(ContentValidationError):
            validate_image_buffer(b"<html>not an image</html>", "png")

    def test_rejects_truncated_signature(self):
        with pytest.raises(ContentValidationError):
            validate_image_buffer(PNG_MAGIC[:4], "png")

    def test_rejects_empty(self):
        with pytest.raises(ContentValidationError):
            validate_image_buffer(b"", "png")

    def test_rejects_unknown_format(self):
        with pytest.raises(ContentValidationError):
            validate_image_buffer(PNG_MAGIC, "bmp")

    def test_png_claimed_as_jpeg(self):
        with pytest.raises(ContentValidationError):
            validate_image_buffer(PNG_MAGIC + b"x", "jpeg")


class TestRenderChart:

    @pytest.mark.parametrize("kind", ["line", "bar", "pie", "doughnut", "scatter"])
    def test_every_kind_renders_png(self, kind):
        data = render_chart(_spec(kind), dpi=50)
        assert data.startswith(PNG_MAGIC)

    def test_table_is_not_drawable(self):
        with pytest.raises(ValidationError):
            render_chart(_spec("table"))

    def test_pie_without_data(self):
        spec = _spec("pie", datasets=[{"label": "Empty", "data": [0, 0, 0]}])
        assert render_chart(spec, dpi=50).startswith(PNG_MAGIC)

    def test_missing_values_tolerated(self):
        spec = _spec("line", datasets=[{"label": "Gaps", "data": [1, None, 3]}])
        assert render_chart(spec, dpi=50).startswith(PNG_MAGIC)

    def test_validated_render(self):
        assert render_validated_chart(_spec("bar"), dpi=50).startswith(PNG_MAGIC)
