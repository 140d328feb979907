"""
test_email_escalation.py — Admin email on new alerts.

Run with:
    pytest tests/test_email_escalation.py -v
"""

from __future__ import annotations

import aiosmtplib
import pytest

from backend.app.alerts.channels.email_alert import SUBJECT, EmailEscalation
from backend.app.alerts.models import AlertChannel, DeliveryStatus, EmergencyType

from tests.factories import FakeSender, email_settings, make_draft


def _parts(message):
    return {part.get_content_type(): part.get_payload(decode=True).decode("utf-8") for part in message.get_payload()}


class TestMessage:

    async def test_subject_and_recipients(self, store, email):
        alert = await store.create(make_draft())
        message = email.build_message(alert)
        assert message["Subject"] == SUBJECT
        assert message["To"] == "security@campus.test, dean@campus.test"
        assert "alerts@campus.test" in message["From"]

    async def test_bodies_contain_alert_details(self, store, email):
        alert = await store.create(make_draft(emergency_type=EmergencyType.FIRE, location_id="cafe"))
        parts = _parts(email.build_message(alert))

        plain = parts["text/plain"]
        assert "Fire" in plain
        assert "Café" in plain
        assert "Student collapsed near the entrance" in plain
        assert "https://safety.campus.test/admin" in plain

        html_body = parts["text/html"]
        assert "<table" in html_body
        assert "https://safety.campus.test/admin" in html_body

    async def test_description_is_escaped(self, store, email):
        alert = await store.create(make_draft(description="<script>alert(1)</script>"))
        html_body = _parts(email.build_message(alert))["text/html"]
        assert "<script>" not in html_body
        assert "&lt;script&gt;" in html_body

    async def test_missing_description(self, store, email):
        alert = await store.create(make_draft(description=None))
        assert "No description" in _parts(email.build_message(alert))["text/plain"]


class TestNotify:

    async def test_delivered(self, store, email, sender):
        alert = await store.create(make_draft())
        attempt = await email.notify(alert)
        assert attempt.status == DeliveryStatus.DELIVERED
        assert attempt.channel == AlertChannel.EMAIL
        assert attempt.recipients == 2
        assert len(sender.messages) == 1

    async def test_failure_is_reported_not_raised(self, store):
        sender = FakeSender(error=aiosmtplib.SMTPConnectError("relay down"))
        email = EmailEscalation(config=email_settings(), sender=sender)
        alert = await store.create(make_draft())
        attempt = await email.notify(alert)
        assert attempt.status == DeliveryStatus.FAILED
        assert "relay down" in attempt.error_message
        assert attempt.failed_recipients == 2

    async def test_skipped_without_smtp(self, store):
        sender = FakeSender()
        email = EmailEscalation(config=email_settings(SMTP_HOST=None), sender=sender)
        attempt = await email.notify(await store.create(make_draft()))
        assert attempt.status == DeliveryStatus.SKIPPED
        assert sender.messages == []
        assert email.configured is False

    async def test_skipped_without_recipients(self, store):
        sender = FakeSender()
        email = EmailEscalation(config=email_settings(ADMIN_EMAILS=" , "), sender=sender)
        attempt = await email.notify(await store.create(make_draft()))
        assert attempt.status == DeliveryStatus.SKIPPED
        assert sender.messages == []

    def test_recipient_list_parsing(self):
        email = EmailEscalation(config=email_settings(ADMIN_EMAILS="a@x.edu,, b@x.edu "))
        assert email.recipients == ["a@x.edu", "b@x.edu"]


class TestSmtpTransport:

    @pytest.fixture
    def captured(self, monkeypatch):
        calls = []

        async def fake_send(message, **kwargs):
            calls.append(kwargs)

        monkeypatch.setattr(aiosmtplib, "send", fake_send)
        return calls

    async def test_implicit_tls_on_465(self, store, captured):
        email = EmailEscalation(config=email_settings(SMTP_PORT=465))
        attempt = await email.notify(await store.create(make_draft()))
        assert attempt.status == DeliveryStatus.DELIVERED
        assert captured[0]["use_tls"] is True
        assert captured[0]["start_tls"] is False
        assert captured[0]["port"] == 465

    async def test_starttls_on_submission_port(self, store, captured):
        email = EmailEscalation(config=email_settings(SMTP_PORT=587))
        await email.notify(await store.create(make_draft()))
        assert captured[0]["use_tls"] is False
        assert captured[0]["start_tls"] is True
