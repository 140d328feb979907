"""
email_alert.py — Email escalation of new alerts to campus administrators.

Delivery mechanism:
    • SMTP via aiosmtplib (implicit TLS on port 465, STARTTLS otherwise)
    • One multipart message (plain + HTML) to every address in ADMIN_EMAILS
    • Link back to the operator dashboard at {CLIENT_URL}/admin

Email is a backstop for admins who are not watching the dashboard. It is
slower than the live fanout and runs after the alert is already stored
and pushed, so a failure here never affects the reporter.

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: 🚨 Emergency Alert
    Body:
        ┌─────────────────────────────────────────┐
        │  🚨 EMERGENCY ALERT                      │
        ├─────────────────────────────────────────┤
        │  Type:        {emergency type label}     │
        │  Location:    {location name}            │
        │  Time:        {reported at}              │
        │  Description: {description}              │
        │                                          │
        │  [View in Admin Dashboard]               │
        └─────────────────────────────────────────┘
"""

from __future__ import annotations

import html
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Awaitable, Callable, List, Optional

import aiosmtplib

from backend.app.alerts.models import (
    AlertChannel,
    DeliveryAttempt,
    DeliveryStatus,
    EmergencyAlert,
    EmergencyType,
)
from backend.app.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

SUBJECT = "🚨 Emergency Alert"

Sender = Callable[[MIMEMultipart], Awaitable[object]]


def _type_label(alert: EmergencyAlert) -> str:
    try:
        return EmergencyType(alert.emergency_type).label
    except ValueError:
        return alert.emergency_type


def _reported_at(alert: EmergencyAlert) -> str:
    return alert.timestamp.strftime("%Y-%m-%d %H:%M UTC") if alert.timestamp else "unknown"


def _dashboard_url(client_url: str) -> str:
    return f"{client_url.rstrip('/')}/admin"


def _build_html_body(alert: EmergencyAlert, client_url: str) -> str:
    """Render the HTML email body."""
    description = html.escape(alert.description or "No description")
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:#F44336;color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">🚨 EMERGENCY ALERT</h2>
        <p style="margin:4px 0 0;">Alert ID: {html.escape(alert.id)}</p>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <table style="width:100%;border-collapse:collapse;">
          <tr><td><strong>Type:</strong></td><td>{html.escape(_type_label(alert))}</td></tr>
          <tr><td><strong>Location:</strong></td><td>{html.escape(alert.location_label)}</td></tr>
          <tr><td><strong>Time:</strong></td><td>{_reported_at(alert)}</td></tr>
          <tr><td><strong>Description:</strong></td><td>{description}</td></tr>
        </table>
        <div style="margin-top:16px;">
          <a href="{html.escape(_dashboard_url(client_url))}"
             style="background:#F44336;color:white;padding:10px 20px;text-decoration:none;border-radius:4px;">
            View in Admin Dashboard
          </a>
        </div>
      </div>
    </div>
    """


def _build_plain_body(alert: EmergencyAlert, client_url: str) -> str:
    return (
        f"EMERGENCY ALERT {alert.id}\n\n"
        f"Type: {_type_label(alert)}\n"
        f"Location: {alert.location_label}\n"
        f"Time: {_reported_at(alert)}\n"
        f"Description: {alert.description or 'No description'}\n\n"
        f"Admin dashboard: {_dashboard_url(client_url)}\n"
    )


class EmailEscalation:
    """
    Sends the new-alert email to the configured admin mailbox list.

    ``sender`` receives the finished MIME message; the default delivers it
    over SMTP. ``notify`` never raises: every outcome, including a skipped
    send, is reported as a DeliveryAttempt.
    """

    def __init__(self, config: Optional[Settings] = None, sender: Optional[Sender] = None):
        self._config = config or default_settings
        self._sender = sender or self._smtp_send

    @property
    def recipients(self) -> List[str]:
        return self._config.admin_email_list

    @property
    def configured(self) -> bool:
        return self._config.email_configured and bool(self.recipients)

    def build_message(self, alert: EmergencyAlert) -> MIMEMultipart:
        cfg = self._config
        message = MIMEMultipart("alternative")
        message["Subject"] = SUBJECT
        message["From"] = formataddr((cfg.EMAIL_FROM_NAME, cfg.EMAIL_FROM or cfg.SMTP_USER or ""))
        message["To"] = ", ".join(self.recipients)
        message.attach(MIMEText(_build_plain_body(alert, cfg.CLIENT_URL), "plain", "utf-8"))
        message.attach(MIMEText(_build_html_body(alert, cfg.CLIENT_URL), "html", "utf-8"))
        return message

    async def _smtp_send(self, message: MIMEMultipart) -> object:
        cfg = self._config
        return await aiosmtplib.send(
            message,
            hostname=cfg.SMTP_HOST,
            port=cfg.SMTP_PORT,
            username=cfg.SMTP_USER,
            password=cfg.SMTP_PASSWORD,
            use_tls=cfg.SMTP_PORT == 465,
            start_tls=cfg.SMTP_PORT != 465,
            timeout=cfg.SMTP_TIMEOUT_SECONDS,
        )

    async def notify(self, alert: EmergencyAlert) -> DeliveryAttempt:
        attempt = DeliveryAttempt(
            channel=AlertChannel.EMAIL,
            event="new-emergency",
            alert_id=alert.id,
            status=DeliveryStatus.SENDING,
            recipients=len(self.recipients),
        )

        if not self._config.email_configured:
            attempt.finish(DeliveryStatus.SKIPPED, "SMTP is not configured")
        elif not self.recipients:
            attempt.finish(DeliveryStatus.SKIPPED, "No admin email recipients configured")
        else:
            try:
                await self._sender(self.build_message(alert))
                attempt.finish(DeliveryStatus.DELIVERED)
            except Exception as exc:
                attempt.failed_recipients = attempt.recipients
                attempt.finish(DeliveryStatus.FAILED, str(exc))

        log = logger.error if attempt.status == DeliveryStatus.FAILED else logger.info
        log(
            "[EMAIL] Alert %s → %d admin(s): %s%s",
            alert.id, attempt.recipients, attempt.status.value,
            f" ({attempt.error_message})" if attempt.error_message else "",
            extra={"alert_id": alert.id, "channel": AlertChannel.EMAIL.value},
        )
        return attempt
