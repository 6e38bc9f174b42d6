"""
distributor.py — Report Delivery Channels.

Delivers rendered artifacts through the channel a schedule names:
    1. email   — SMTP, HTML summary body, every artifact attached
    2. slack   — incoming webhook, Block Kit summary with artifact links
    3. webhook — JSON POST of the summary and artifact links to each URL

Email and Slack run in dry-run mode when credentials are absent: the
payload is logged rather than sent and the delivery counts as successful,
which keeps local development safe.

SMTP credentials and the Slack webhook URL are read exclusively from
environment variables (.env file). No credentials in config.yaml.
"""

import html
import json
import logging
import os
import smtplib
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Callable

import requests

from report_processor.document import Document
from report_processor.errors import DeliveryError, ValidationError
from report_processor.models import ScheduledReport
from report_processor.renderer import Artifact

logger = logging.getLogger(__name__)


def _load_env() -> dict[str, str]:
    """Load environment variables, falling back to .env file parsing.

    Returns:
        Dict of environment variable name → value.
    """
    env = dict(os.environ)

    env_path = Path(".env")
    if env_path.exists():
        with open(env_path, "r") as fh:
            for line in fh:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, val = line.split("=", 1)
                    key = key.strip()
                    val = val.strip().strip('"').strip("'")
                    if key not in env and val:
                        env[key] = val
    return env


@dataclass
class DeliveryResult:
    """Per-recipient outcome of one delivery."""
    channel: str
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


def artifact_link(artifact: Artifact, public_base_url: str = "") -> str:
    """Public URL for an artifact, or a file URI when none is configured."""
    if public_base_url:
        return f"{public_base_url.rstrip('/')}/{artifact.path.name}"
    return Path(artifact.path).resolve().as_uri()


def summary_payload(
    report: ScheduledReport,
    document: Document,
    artifacts: list[Artifact],
    public_base_url: str = "",
) -> dict[str, Any]:
    """Channel-neutral summary shared by the slack and webhook channels."""
    return {
        "scheduledReportId": report.id,
        "reportName": report.name,
        "title": document.title,
        "company": document.company_name,
        "period": {
            "start": document.period.start.isoformat(),
            "end": document.period.end.isoformat(),
        },
        "generatedAt": document.generated_at.isoformat(),
        "highlights": list(document.highlights),
        "sections": [s.title for s in document.sections],
        "failedSections": [s.title for s in document.sections if s.is_error],
        "artifacts": [
            {"format": a.format, "name": a.path.name, "url": artifact_link(a, public_base_url)}
            for a in artifacts
        ],
    }


class DeliveryChannel(ABC):
    """One delivery method."""

    name = ""

    @abstractmethod
    def send(
        self,
        report: ScheduledReport,
        document: Document,
        artifacts: list[Artifact],
    ) -> DeliveryResult:
        ...


# ---------------------------------------------------------------------------
# Email distribution
# ---------------------------------------------------------------------------

def _build_email_body(document: Document, brand: dict) -> str:
    """Build an HTML email body with the highlights and section list.

    Args:
        document: Delivered document.
        brand: Brand colour dict.

    Returns:
        HTML string for the email body.
    """
    highlights_html = "".join(
        f"<li style=\"margin-bottom:4px;\">{html.escape(line)}</li>" for line in document.highlights
    )
    sections_html = "".join(
        f"<li>{html.escape(s.title)}"
        + (' <span style="color:#C0392B;">(unavailable)</span>' if s.is_error else "")
        + "</li>"
        for s in document.sections
    )
    company = html.escape(document.company_name) if document.company_name else ""
    return f"""
    <html><body style="font-family:Arial,sans-serif;color:#2D3748;max-width:700px;margin:auto;">
    <div style="background:#{brand.get('primary', '1F3864')};padding:24px 28px;border-radius:6px 6px 0 0;">
        <h2 style="color:#fff;margin:0;">{html.escape(document.title)}</h2>
        <p style="color:rgba(255,255,255,.75);margin:4px 0 0;">
            {company}{' | ' if company else ''}{html.escape(document.period.label)}
        </p>
    </div>
    <div style="background:#F4F7FA;padding:20px 28px;">
        {f'<h4 style="margin:0 0 8px;">Key Highlights</h4><ul>{highlights_html}</ul>' if highlights_html else ''}
        <h4 style="margin:12px 0 8px;">Contents</h4>
        <ol style="font-size:13px;line-height:1.6;">{sections_html}</ol>
        <p style="font-size:13px;line-height:1.6;">
            The full report is attached as PDF and Excel workbook.
            Generated at {document.generated_at.strftime('%H:%M on %A %d %B %Y')}.
        </p>
        <hr style="border:none;border-top:1px solid #D1D5DB;margin:16px 0;">
        <p style="font-size:11px;color:#888;">
            This email and its attachments are intended solely for the named recipients.
        </p>
    </div>
    </body></html>"""


class EmailDelivery(DeliveryChannel):
    """SMTP delivery with every artifact attached."""

    name = "email"

    def __init__(
        self,
        settings: dict[str, Any],
        brand: dict | None = None,
        env: dict[str, str] | None = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ):
        env = _load_env() if env is None else env
        self.smtp_host = env.get("SMTP_HOST", "")
        self.smtp_port = int(env.get("SMTP_PORT", "587"))
        self.smtp_user = env.get("SMTP_USER", "")
        self.smtp_password = env.get("SMTP_PASSWORD", "")
        self.from_addr = env.get("EMAIL_FROM", self.smtp_user)
        self.subject_template = settings.get("email_subject", "{report} | {company}")
        self.timeout = settings.get("request_timeout_seconds", 10)
        self.brand = brand or {}
        self.smtp_factory = smtp_factory

    @property
    def dry_run(self) -> bool:
        return not all([self.smtp_host, self.smtp_user, self.smtp_password])

    def build_message(self, report: ScheduledReport, document: Document,
                      artifacts: list[Artifact]) -> MIMEMultipart:
        subject = self.subject_template.format(
            report=report.name,
            title=document.title,
            company=document.company_name,
            period=document.period.label,
        ).strip(" |")
        msg = MIMEMultipart("mixed")
        msg["Subject"] = subject
        msg["From"] = self.from_addr
        msg["To"] = ", ".join(report.recipients)
        msg.attach(MIMEText(_build_email_body(document, self.brand), "html"))

        for artifact in artifacts:
            if artifact.path.exists():
                with open(artifact.path, "rb") as fh:
                    part = MIMEBase("application", "octet-stream")
                    part.set_payload(fh.read())
                encoders.encode_base64(part)
                part.add_header(
                    "Content-Disposition",
                    f'attachment; filename="{artifact.path.name}"',
                )
                msg.attach(part)
        return msg

    def send(self, report, document, artifacts) -> DeliveryResult:
        msg = self.build_message(report, document, artifacts)
        recipients = report.recipients

        if self.dry_run:
            logger.warning(
                "SMTP credentials not set, email dry-run mode.\n"
                "  Subject: %s\n  Recipients: %s\n  Attachments: %s",
                msg["Subject"],
                ", ".join(recipients),
                ", ".join(a.path.name for a in artifacts) or "N/A",
            )
            return DeliveryResult(self.name, delivered=list(recipients), dry_run=True)

        try:
            with self.smtp_factory(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.ehlo()
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                refused = server.sendmail(self.from_addr, recipients, msg.as_string()) or {}
        except smtplib.SMTPRecipientsRefused as exc:
            refused = exc.recipients
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email delivery failed: %s", exc)
            return DeliveryResult(self.name, failed={r: str(exc) for r in recipients})

        failed = {r: str(refused[r]) for r in recipients if r in refused}
        delivered = [r for r in recipients if r not in refused]
        logger.info("Email sent to %d/%d recipients", len(delivered), len(recipients))
        return DeliveryResult(self.name, delivered=delivered, failed=failed)


# ---------------------------------------------------------------------------
# HTTP channels
# ---------------------------------------------------------------------------

def _post_with_retry(
    url: str,
    payload: dict[str, Any],
    label: str,
    max_attempts: int,
    timeout: float,
    sleep: Callable[[float], None],
    session=requests,
) -> str | None:
    """POST `payload` with exponential backoff. Returns None or the last error."""
    last_error = ""
    for attempt in range(1, max_attempts + 1):
        try:
            resp = session.post(url, json=payload, timeout=timeout)
            if 200 <= resp.status_code < 300:
                logger.info("%s delivered (attempt %d)", label, attempt)
                return None
            last_error = f"HTTP {resp.status_code}"
            logger.warning("%s returned %s (attempt %d)", label, resp.status_code, attempt)
        except requests.RequestException as exc:
            last_error = str(exc)
            logger.warning("%s request failed (attempt %d): %s", label, attempt, exc)
        if attempt < max_attempts:
            sleep(2 ** attempt)
    logger.error("%s failed after %d attempts", label, max_attempts)
    return last_error or "delivery failed"


def _build_slack_payload(summary: dict[str, Any], settings: dict[str, Any],
                         channel: str) -> dict[str, Any]:
    """Build a Slack Block Kit payload from the report summary.

    Args:
        summary: Output of summary_payload().
        settings: delivery config section.
        channel: Target channel.

    Returns:
        Slack Block Kit payload dict.
    """
    highlight_lines = "\n".join(f"• {line}" for line in summary["highlights"]) or "_No highlights this period._"
    link_lines = "\n".join(
        f"<{a['url']}|{a['format'].upper()}: {a['name']}>" for a in summary["artifacts"]
    )
    header = f":bar_chart: {summary['title']}"
    if summary["company"]:
        header += f" | {summary['company']}"

    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": header[:150], "emoji": True},
        },
        {"type": "divider"},
        {"type": "section", "text": {"type": "mrkdwn", "text": highlight_lines}},
    ]
    if link_lines:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": link_lines}})
    context = f":information_source: {len(summary['sections'])} section(s)"
    if summary["failedSections"]:
        context += f", unavailable: {', '.join(summary['failedSections'])}"
    blocks += [
        {"type": "divider"},
        {"type": "context", "elements": [{"type": "mrkdwn", "text": context}]},
    ]
    return {
        "username": settings.get("slack_username", "Report Bot"),
        "icon_emoji": settings.get("slack_icon_emoji", ":bar_chart:"),
        "channel": channel,
        "text": f"{summary['title']} is ready",
        "blocks": blocks,
    }


class SlackDelivery(DeliveryChannel):
    """Slack incoming-webhook delivery; each recipient is a channel name."""

    name = "slack"

    def __init__(
        self,
        settings: dict[str, Any],
        env: dict[str, str] | None = None,
        session=requests,
        sleep: Callable[[float], None] = time.sleep,
    ):
        env = _load_env() if env is None else env
        self.webhook_url = env.get("SLACK_WEBHOOK_URL", "").strip()
        self.settings = settings
        self.session = session
        self.sleep = sleep

    def send(self, report, document, artifacts) -> DeliveryResult:
        summary = summary_payload(report, document, artifacts,
                                  self.settings.get("public_base_url", ""))
        result = DeliveryResult(self.name, dry_run=not self.webhook_url)
        for channel in report.recipients:
            payload = _build_slack_payload(summary, self.settings, channel)
            if not self.webhook_url:
                logger.warning(
                    "SLACK_WEBHOOK_URL not set, Slack dry-run mode.\n%s",
                    json.dumps(payload, indent=2),
                )
                result.delivered.append(channel)
                continue
            error = _post_with_retry(
                self.webhook_url, payload, f"Slack summary to {channel}",
                int(self.settings.get("max_attempts", 3)),
                self.settings.get("request_timeout_seconds", 10),
                self.sleep, self.session,
            )
            if error is None:
                result.delivered.append(channel)
            else:
                result.failed[channel] = error
        return result


class WebhookDelivery(DeliveryChannel):
    """JSON POST to every recipient URL."""

    name = "webhook"

    def __init__(
        self,
        settings: dict[str, Any],
        session=requests,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.session = session
        self.sleep = sleep

    def send(self, report, document, artifacts) -> DeliveryResult:
        payload = {
            "event": "report.generated",
            **summary_payload(report, document, artifacts,
                              self.settings.get("public_base_url", "")),
        }
        result = DeliveryResult(self.name)
        for url in report.recipients:
            if not url.startswith(("http://", "https://")):
                result.failed[url] = "not an http(s) URL"
                logger.error("Webhook recipient %r is not an http(s) URL", url)
                continue
            error = _post_with_retry(
                url, payload, f"Webhook {url}",
                int(self.settings.get("max_attempts", 3)),
                self.settings.get("request_timeout_seconds", 10),
                self.sleep, self.session,
            )
            if error is None:
                result.delivered.append(url)
            else:
                result.failed[url] = error
        return result


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class DeliveryDispatcher:
    """Routes artifacts to the channel named by a schedule's delivery method."""

    def __init__(self, channels: dict[str, DeliveryChannel]):
        self.channels = dict(channels)

    def dispatch(
        self,
        report: ScheduledReport,
        document: Document,
        artifacts: list[Artifact],
    ) -> DeliveryResult:
        """Deliver and return the per-recipient result.

        Raises:
            ValidationError: No channel for the delivery method.
            DeliveryError: Any recipient failed.
        """
        channel = self.channels.get(report.delivery_method)
        if channel is None:
            raise ValidationError(f"Unsupported delivery method: {report.delivery_method}")

        paths = [a.path for a in artifacts]
        try:
            result = channel.send(report, document, artifacts)
        except DeliveryError:
            raise
        except Exception as exc:
            raise DeliveryError(
                f"{report.delivery_method} delivery failed: {exc}",
                channel=report.delivery_method,
                artifact_paths=paths,
                failed_recipients=list(report.recipients),
            ) from exc

        if not result.ok:
            detail = "; ".join(f"{r}: {e}" for r, e in result.failed.items())
            raise DeliveryError(
                f"{report.delivery_method} delivery failed for "
                f"{len(result.failed)}/{len(report.recipients)} recipient(s): {detail}",
                channel=report.delivery_method,
                artifact_paths=paths,
                failed_recipients=list(result.failed),
            )
        return result


def build_dispatcher(cfg: dict[str, Any], env: dict[str, str] | None = None) -> DeliveryDispatcher:
    """Dispatcher wired with the three standard channels."""
    settings = cfg.get("delivery", {})
    env = _load_env() if env is None else env
    return DeliveryDispatcher({
        "email": EmailDelivery(settings, brand=cfg.get("report", {}).get("brand"), env=env),
        "slack": SlackDelivery(settings, env=env),
        "webhook": WebhookDelivery(settings),
    })
