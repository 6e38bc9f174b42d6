"""
test_output_paths.py — Unit tests for output naming, path safety and cleanup.
"""

import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from report_processor.errors import ContentSafetyError, PathViolationError
from report_processor.output_paths import (
    build_filename,
    build_output_path,
    cleanup_old_files,
    resolve_output_path,
    sanitize_filename,
)

WHEN = datetime(2026, 3, 2, 9, 0, 0, 123456, tzinfo=timezone.utc)


class TestSanitize:

    def test_strips_directories(self):
        assert sanitize_filename("../../etc/passwd") == "passwd"

    def test_backslash_separators(self):
        assert sanitize_filename("..\\..\\windows\\evil.pdf") == "evil.pdf"

    def test_drops_unsafe_characters(self):
        assert sanitize_filename("Q1 report (final)!.pdf") == "Q1reportfinal.pdf"

    def test_build_filename(self):
        assert build_filename("Executive Summary", "pdf", WHEN) == \
            "Executive_Summary_report_20260302T090000123456.pdf"


class TestResolveOutputPath:

    def test_traversal_rejected(self, tmp_path):
        with pytest.raises(PathViolationError):
            resolve_output_path(tmp_path, "../../etc/passwd", "pdf")

    def test_traversal_with_valid_extension_stays_inside(self, tmp_path):
        path = resolve_output_path(tmp_path, "../../etc/report.pdf", "pdf")
        assert path.parent == Path(os.path.abspath(tmp_path))
        assert path.name == "report.pdf"

    def test_wrong_extension_rejected(self, tmp_path):
        with pytest.raises(PathViolationError):
            resolve_output_path(tmp_path, "report.xlsx", "pdf")

    def test_empty_and_dot_names_rejected(self, tmp_path):
        for name in ("", "..", "///", "$$$"):
            with pytest.raises(PathViolationError):
                resolve_output_path(tmp_path, name, "pdf")

    def test_unknown_artifact_type(self, tmp_path):
        with pytest.raises(PathViolationError):
            resolve_output_path(tmp_path, "chart.svg", "svg")

    def test_is_a_content_safety_error(self, tmp_path):
        with pytest.raises(ContentSafetyError):
            resolve_output_path(tmp_path, "x.exe", "pdf")

    def test_extension_check_case_insensitive(self, tmp_path):
        assert resolve_output_path(tmp_path, "REPORT.PDF", "pdf").name == "REPORT.PDF"


class TestBuildOutputPath:

    def test_never_overwrites(self, tmp_path):
        first = build_output_path(tmp_path, "Weekly", "pdf", WHEN)
        first.write_bytes(b"%PDF")
        second = build_output_path(tmp_path, "Weekly", "pdf", WHEN)
        assert second != first
        assert second.name.endswith("-2.pdf")


class TestCleanup:

    def test_removes_only_expired_files(self, tmp_path):
        old = tmp_path / "old.pdf"
        fresh = tmp_path / "fresh.pdf"
        old.write_bytes(b"x")
        fresh.write_bytes(b"x")
        now = time.time()
        os.utime(old, (now - 80 * 3600, now - 80 * 3600))

        removed = cleanup_old_files(tmp_path, max_age_hours=72, now=now)

        assert removed == 1
        assert not old.exists()
        assert fresh.exists()

    def test_leaves_directories_alone(self, tmp_path):
        sub = tmp_path / "archive"
        sub.mkdir()
        now = time.time()
        os.utime(sub, (now - 999 * 3600, now - 999 * 3600))
        assert cleanup_old_files(tmp_path, max_age_hours=1, now=now) == 0
        assert sub.exists()

    def test_missing_directory(self, tmp_path):
        assert cleanup_old_files(tmp_path / "nope") == 0
