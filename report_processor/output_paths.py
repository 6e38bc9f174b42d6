"""
output_paths.py — Output file naming, path safety and cleanup sweep.

All artifacts land in a single output directory. Requested names are
reduced to a bare basename over ``[A-Za-z0-9._-]``, must carry an allowed
extension for their artifact type, and the joined path must stay inside
the output directory. Anything else raises `PathViolationError`.
"""

import logging
import os
import re
import time
from datetime import datetime
from pathlib import Path

from report_processor.errors import PathViolationError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {
    "pdf": (".pdf",),
    "xlsx": (".xlsx",),
    "png": (".png",),
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(name: str) -> str:
    """Reduce `name` to a safe basename.

    Directory components (either separator) are dropped and every character
    outside the allow-list is removed.
    """
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    return _UNSAFE_CHARS.sub("", base)


def build_filename(title: str, ext: str, when: datetime) -> str:
    """Default artifact name: ``{title}_report_{timestamp}.{ext}``."""
    stem = re.sub(r"\s+", "_", title.strip())
    return sanitize_filename(f"{stem}_report_{when:%Y%m%dT%H%M%S%f}.{ext}")


def resolve_output_path(output_dir: Path | str, filename: str, artifact_type: str) -> Path:
    """Validate `filename` and join it onto `output_dir`.

    Args:
        output_dir: Directory all artifacts must live in.
        filename: Requested (untrusted) name.
        artifact_type: pdf | xlsx | png.

    Returns:
        Absolute path inside `output_dir`.

    Raises:
        PathViolationError: Empty name, wrong extension or escaping path.
    """
    extensions = ALLOWED_EXTENSIONS.get(artifact_type)
    if extensions is None:
        raise PathViolationError(f"Unknown artifact type: {artifact_type}")

    safe = sanitize_filename(filename)
    if not safe or safe.strip(".") == "":
        raise PathViolationError(f"Invalid output filename: {filename!r}")
    if not safe.lower().endswith(extensions):
        raise PathViolationError(
            f"{artifact_type.upper()} output must end with {', '.join(extensions)}: {safe!r}"
        )

    root = os.path.abspath(str(output_dir))
    candidate = os.path.abspath(os.path.join(root, safe))
    if os.path.commonpath([root, candidate]) != root or candidate == root:
        raise PathViolationError(f"Output path escapes {root}: {filename!r}")
    return Path(candidate)


def build_output_path(
    output_dir: Path | str, title: str, artifact_type: str, when: datetime
) -> Path:
    """Default name for `title` resolved safely within `output_dir`.

    An existing file is never overwritten: a numeric suffix is added instead.
    """
    filename = build_filename(title, artifact_type, when)
    path = resolve_output_path(output_dir, filename, artifact_type)
    n = 2
    while path.exists():
        stem, ext = filename.rsplit(".", 1)
        path = resolve_output_path(output_dir, f"{stem}-{n}.{ext}", artifact_type)
        n += 1
    return path


def cleanup_old_files(output_dir: Path | str, max_age_hours: float = 72, now: float | None = None) -> int:
    """Delete regular files in `output_dir` older than `max_age_hours`.

    Args:
        output_dir: Directory to sweep (not recursive).
        max_age_hours: Age threshold based on modification time.
        now: Reference epoch seconds (defaults to time.time()).

    Returns:
        Number of files removed.
    """
    directory = Path(output_dir)
    if not directory.is_dir():
        return 0
    cutoff = (now if now is not None else time.time()) - max_age_hours * 3600
    removed = 0
    for path in directory.iterdir():
        try:
            if path.is_file() and not path.is_symlink() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
                logger.info("Removed expired report file %s", path.name)
        except OSError as exc:
            logger.warning("Could not remove %s: %s", path, exc)
    if removed:
        logger.info("Cleanup removed %d file(s) from %s", removed, directory)
    return removed
