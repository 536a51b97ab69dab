"""
UAT Tracker
Notification Dispatcher.

Drains the post-commit TaskEvent outbox returned by task operations and
delivers each event to:
    - Microsoft Teams (MessageCard via the country's incoming webhook), when
      the country has an active NotificationConfig with the event enabled;
    - email (SMTP), when the event names a recipient. Without MAIL_SERVER the
      email is logged and not sent (dev/test mode).

Delivery is fire-and-forget: failures are logged and reported in the
returned results, never raised, and never touch task state.

Configuration (Flask config):
    APP_BASE_URL            used for the "Open Task" link
    TEAMS_WEBHOOK_TIMEOUT   seconds (default 10)
    MAIL_SERVER / MAIL_PORT / MAIL_USE_TLS / MAIL_USERNAME / MAIL_PASSWORD /
    MAIL_DEFAULT_SENDER

Testability: pass a fake ``session`` (anything with ``post()``) instead of
letting the dispatcher create a real requests.Session.
"""

from __future__ import annotations

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import requests
from flask import current_app
from sqlalchemy import select

from uat_tracker.models import db
from uat_tracker.models.notification import NotificationConfig
from uat_tracker.services.events import TaskEvent

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10
_THEME_COLOR = "C8102E"

_EMAIL_SUBJECTS = {
    "TASK_ASSIGNED": "[UAT] New task assigned: {title}",
    "REMINDER": "[UAT] Reminder: {title}",
    "SIGNED_OFF": "[UAT] Signed off: {title}",
    "FAILED_STEP": "[UAT] Step failed: {title}",
    "DEPLOYED": "[UAT] Deployed: {title}",
}


class NotificationDispatcher:
    """Deliver TaskEvents to Teams and email after a successful commit."""

    def __init__(self, session: requests.Session | None = None, timeout: float | None = None) -> None:
        self._session = session
        self._timeout = timeout

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @property
    def timeout(self) -> float:
        if self._timeout is not None:
            return self._timeout
        return current_app.config.get("TEAMS_WEBHOOK_TIMEOUT", _DEFAULT_TIMEOUT)

    # ── Public API ───────────────────────────────────────────────────────

    def dispatch(self, events: list[TaskEvent]) -> list[dict]:
        """Deliver every event. Returns one result dict per event."""
        results = []
        for event in events:
            results.append({
                "kind": event.kind,
                "task_id": event.task_id,
                "teams": self._deliver_teams(event),
                "email": self._deliver_email(event),
            })
        return results

    # ── Teams ────────────────────────────────────────────────────────────

    def build_message_card(self, event: TaskEvent) -> dict:
        card = {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "summary": event.title,
            "themeColor": _THEME_COLOR,
            "title": event.title,
            "text": event.text,
        }
        if event.facts:
            card["sections"] = [{"facts": [{"name": n, "value": v} for n, v in event.facts]}]
        base_url = (current_app.config.get("APP_BASE_URL") or "").rstrip("/")
        if base_url:
            card["potentialAction"] = [{
                "@type": "OpenUri",
                "name": "Open Task",
                "targets": [{"os": "default", "uri": f"{base_url}/tasks/{event.task_id}"}],
            }]
        return card

    def _deliver_teams(self, event: TaskEvent) -> str:
        if not event.country_code:
            return "skipped"
        try:
            config = db.session.execute(
                select(NotificationConfig).where(NotificationConfig.country_code == event.country_code)
            ).scalar_one_or_none()
        except Exception:
            logger.exception("Teams config lookup failed country=%s", event.country_code)
            return "failed"
        if config is None or not config.accepts(event.kind):
            return "skipped"

        try:
            resp = self.session.post(
                config.teams_webhook_url,
                json=self.build_message_card(event),
                timeout=self.timeout,
            )
            if resp.status_code >= 400:
                logger.warning(
                    "Teams webhook rejected event kind=%s task=%s status=%s",
                    event.kind, event.task_id, resp.status_code,
                    extra={"event_type": event.kind, "task_id": event.task_id},
                )
                return "failed"
        except requests.RequestException as exc:
            logger.warning(
                "Teams webhook failed kind=%s task=%s: %s", event.kind, event.task_id, exc,
                extra={"event_type": event.kind, "task_id": event.task_id},
            )
            return "failed"
        return "sent"

    # ── Email ────────────────────────────────────────────────────────────

    def _deliver_email(self, event: TaskEvent) -> str:
        if not event.recipient_email:
            return "skipped"
        subject = _EMAIL_SUBJECTS.get(event.kind, "[UAT] {title}").format(title=event.title)
        # titles, step text and comments are user input
        facts = "".join(
            f"<li><b>{html.escape(str(n))}:</b> {html.escape(str(v))}</li>" for n, v in event.facts
        )
        html_body = f"<p>{html.escape(event.text)}</p><ul>{facts}</ul>"

        if not current_app.config.get("MAIL_SERVER"):
            logger.info(
                "Email (dev mode): to=%s subject='%s'", event.recipient_email, subject,
                extra={"event_type": event.kind, "task_id": event.task_id},
            )
            return "logged"
        try:
            self._send_smtp(
                to_email=event.recipient_email,
                to_name=event.recipient_name,
                subject=subject,
                html_body=html_body,
            )
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email failed: to=%s error=%s", event.recipient_email, exc)
            return "failed"
        logger.info("Email sent: to=%s subject='%s'", event.recipient_email, subject)
        return "sent"

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
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

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


dispatcher = NotificationDispatcher()
