"""
errors.py — Exception hierarchy for the report processor.

Every failure the pipeline distinguishes has its own class so callers can
tell "we could not build the report" apart from "we built it but could not
send it":

    ValidationError           — malformed template / schedule configuration
    TransientGenerationError  — metric lookup or rendering failed; retried next tick
    DeliveryError             — artifacts exist but a channel rejected them
    ConcurrencyError          — a cycle is already running
    ContentSafetyError        — output path or binary content failed a safety check
"""

from pathlib import Path


class ReportProcessorError(Exception):
    """Base class for all report processor errors."""


class ValidationError(ReportProcessorError):
    """Configuration or record is malformed. Not retried."""


class TransientGenerationError(ReportProcessorError):
    """Report generation failed in a way that may succeed on the next tick."""


class ReportTimeoutError(TransientGenerationError):
    """A single report exceeded its end-to-end processing budget."""


class DeliveryError(ReportProcessorError):
    """A delivery channel failed after the artifacts were generated.

    Attributes:
        channel: Delivery method name (email, slack, webhook).
        artifact_paths: Files that were generated but not (fully) delivered.
        failed_recipients: Recipients the channel reported as failed.
    """

    def __init__(
        self,
        message: str,
        channel: str = "",
        artifact_paths: list[Path] | None = None,
        failed_recipients: list[str] | None = None,
    ):
        super().__init__(message)
        self.channel = channel
        self.artifact_paths = list(artifact_paths or [])
        self.failed_recipients = list(failed_recipients or [])


class ConcurrencyError(ReportProcessorError):
    """Raised when a manual trigger arrives while processing is in progress."""


class ContentSafetyError(ReportProcessorError):
    """Output failed a path or content safety check. Fatal for that artifact."""


class PathViolationError(ContentSafetyError):
    """Requested output path is invalid or escapes the output directory."""


class ContentValidationError(ContentSafetyError):
    """A binary buffer does not match the format it claims to be."""
