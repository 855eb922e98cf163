"""
BPM Engine — Email Service.

Provides email sending capabilities with template support, and the
default notifier used to deliver outbox events.
When SMTP is not configured, emails are logged but not sent (dev/test mode).

Uses:
    - Flask config (MAIL_SERVER, MAIL_PORT, etc.)
    - Falls back to logging-only mode when SMTP is not configured
    - All emails are recorded in EmailLog for audit

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    BPM_EMAIL_FROM  From address for BPM notifications
    BPM_SITE_URL    Base URL used for deep links and the footer link
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app
from markupsafe import escape
from sqlalchemy import select

from bpm.core.exceptions import ExternalServiceError
from bpm.models import db
from bpm.models.notification import (
    EVENT_PROCESS_COMPLETED,
    EVENT_TASK_APPROVED,
    EVENT_TASK_ASSIGNED,
    EVENT_TASK_REJECTED,
    EVENT_TASK_STARTED,
    EmailLog,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width,initial-scale=1"></head>
<body style="font-family: system-ui, sans-serif; line-height: 1.5; color: #333; max-width: 560px; margin: 0 auto; padding: 24px;">
  <div style="background: #f8f9fa; border-radius: 8px; padding: 20px; margin-bottom: 16px;">
    {content}
  </div>
  <p style="font-size: 12px; color: #666;">
    <a href="{site_url}" style="color: #2563eb;">Open BPM</a>
  </p>
</body>
</html>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    EVENT_TASK_ASSIGNED: {
        "subject": "[BPM] Task assigned: {task_name} – {process_name}",
        "html": """
    <h2 style="margin: 0 0 12px 0; font-size: 18px;">New task assigned</h2>
    <p style="margin: 0 0 8px 0;">Hello {recipient_name},</p>
    <p style="margin: 0 0 8px 0;">You have been assigned to a task in the following process:</p>
    <ul style="margin: 8px 0; padding-left: 20px;">
      <li><strong>Process:</strong> {process_name}</li>
      <li><strong>Task:</strong> {task_name}</li>
    </ul>
    <p style="margin: 12px 0 0 0;"><a href="{link}" style="color: #2563eb;">View process &amp; task</a></p>
        """,
    },
    EVENT_TASK_STARTED: {
        "subject": "[BPM] Task started: {task_name} – {process_name}",
        "html": """
    <h2 style="margin: 0 0 12px 0; font-size: 18px;">Task in progress</h2>
    <p style="margin: 0 0 8px 0;">Hello {recipient_name},</p>
    <p style="margin: 0 0 8px 0;">A task you can act on has been started:</p>
    <ul style="margin: 8px 0; padding-left: 20px;">
      <li><strong>Process:</strong> {process_name}</li>
      <li><strong>Task:</strong> {task_name}</li>
      <li><strong>Started by:</strong> {actor_name}</li>
    </ul>
    <p style="margin: 12px 0 0 0;"><a href="{link}" style="color: #2563eb;">View process</a></p>
        """,
    },
    EVENT_TASK_APPROVED: {
        "subject": "[BPM] Task approved: {task_name} – {process_name}",
        "html": """
    <h2 style="margin: 0 0 12px 0; font-size: 18px;">Task approved</h2>
    <p style="margin: 0 0 8px 0;">Hello {recipient_name},</p>
    <p style="margin: 0 0 8px 0;">A task in a process you are involved in has been approved:</p>
    <ul style="margin: 8px 0; padding-left: 20px;">
      <li><strong>Process:</strong> {process_name}</li>
      <li><strong>Task:</strong> {task_name}</li>
      <li><strong>Approved by:</strong> {actor_name}</li>
    </ul>
    <p style="margin: 12px 0 0 0;"><a href="{link}" style="color: #2563eb;">View process</a></p>
        """,
    },
    EVENT_TASK_REJECTED: {
        "subject": "[BPM] Task rejected: {task_name} – {process_name}",
        "html": """
    <h2 style="margin: 0 0 12px 0; font-size: 18px;">Task rejected</h2>
    <p style="margin: 0 0 8px 0;">Hello {recipient_name},</p>
    <p style="margin: 0 0 8px 0;">A task in a process you are involved in has been rejected:</p>
    <ul style="margin: 8px 0; padding-left: 20px;">
      <li><strong>Process:</strong> {process_name}</li>
      <li><strong>Task:</strong> {task_name}</li>
      <li><strong>Rejected by:</strong> {actor_name}</li>
      {comment_item}
    </ul>
    <p style="margin: 12px 0 0 0;"><a href="{link}" style="color: #2563eb;">View process</a></p>
        """,
    },
    EVENT_PROCESS_COMPLETED: {
        "subject": "[BPM] Process completed: {process_name}",
        "html": """
    <h2 style="margin: 0 0 12px 0; font-size: 18px;">Process completed</h2>
    <p style="margin: 0 0 8px 0;">Hello {recipient_name},</p>
    <p style="margin: 0 0 8px 0;">The following process has been completed:</p>
    <p style="margin: 8px 0;"><strong>{process_name}</strong></p>
    <p style="margin: 12px 0 0 0;"><a href="{link}" style="color: #2563eb;">View process</a></p>
        """,
    },
}


class EmailService:
    """
    Email sending service with template support.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        """Check if SMTP is configured."""
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        """Get an email template by name."""
        return _TEMPLATES.get(template_name)

    @staticmethod
    def render(template_name: str, context: dict[str, Any]) -> tuple[str, str] | None:
        """
        Render (subject, html) for a template.

        Context values are HTML-escaped for the body; the subject is plain
        text and uses them unescaped.
        """
        template = _TEMPLATES.get(template_name)
        if not template:
            return None

        site_url = (current_app.config.get("BPM_SITE_URL") or "http://localhost:3000").rstrip("/")
        plain = _SafeDict({k: "" if v is None else str(v) for k, v in context.items()})
        escaped = _SafeDict({k: escape(v) for k, v in plain.items()})

        comment = plain.get("comment")
        escaped["comment_item"] = (
            f"<li><strong>Comment:</strong> {escape(comment)}</li>" if comment else ""
        )

        subject = template["subject"].format_map(plain)
        content = template["html"].format_map(escaped)
        html_body = _LAYOUT.format(content=content, site_url=escape(site_url))
        return subject, html_body

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        outbox_id: str | None = None,
    ) -> EmailLog:
        """
        Send an email and log it.

        If SMTP is not configured, the email is logged with status='sent'
        (in dev mode) to simulate sending without actual delivery.

        Returns:
            The EmailLog record for this email.
        """
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject[:500],
            template_name=template_name,
            status="queued",
            outbox_id=outbox_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            # Dev/test mode: log only
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (dev mode): to=%s subject='%s' template=%s",
                to_email, subject, template_name,
            )
            return log

        try:
            cls._send_smtp(to_email=to_email, to_name=to_name,
                           subject=subject, html_body=html_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc)

        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        template_name: str,
        context: dict[str, Any],
        outbox_id: str | None = None,
    ) -> EmailLog | None:
        """
        Send an email using a named template.

        Template variables are interpolated from the context dict.
        """
        rendered = cls.render(template_name, context)
        if rendered is None:
            logger.warning("Email template not found: %s", template_name)
            return None
        subject, html_body = rendered

        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=subject,
            html_body=html_body,
            template_name=template_name,
            outbox_id=outbox_id,
        )

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> None:
        """Actually send via SMTP."""
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("BPM_EMAIL_FROM") or f"BPM <noreply@{server}>"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class EmailNotifier:
    """
    Default notifier: one templated email per recipient of an outbox event.

    Raises ExternalServiceError when any recipient's email failed, so the
    outbox row ends ``failed`` and can be retried. Recipients that already
    have a ``sent`` EmailLog for the event are skipped on a retry.
    """

    def _already_sent(self, event) -> set[str]:
        if event.id is None:
            return set()
        return set(db.session.execute(
            select(EmailLog.recipient_email).where(
                EmailLog.outbox_id == event.id,
                EmailLog.status == "sent",
            )
        ).scalars().all())

    def send(self, recipients, event) -> list[EmailLog]:
        payload = dict(event.payload or {})
        done = self._already_sent(event)
        logs = []
        for user in recipients:
            if not user.email or not user.is_active or user.email in done:
                continue
            context = dict(payload, recipient_name=user.full_name or user.email)
            log = EmailService.send_from_template(
                to_email=user.email,
                to_name=user.full_name or None,
                template_name=event.event_kind,
                context=context,
                outbox_id=event.id,
            )
            if log is not None:
                logs.append(log)

        failed = [log for log in logs if log.status == "failed"]
        if failed:
            raise ExternalServiceError(
                "smtp",
                f"{len(failed)} of {len(logs)} emails failed: {failed[0].error_message}",
            )
        return logs


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
