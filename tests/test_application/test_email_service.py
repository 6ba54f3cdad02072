"""
Tests for email rendering and the SMTP sender.
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from app.application.email_service import (
    MailNotConfiguredError,
    SmtpMailSender,
    render_digest_email,
    render_notification_email,
)
from app.config import Settings
from app.domain.notification import Category, Channel, DeliveryStatus, NotificationRecord, Priority


NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def _record(category=Category.SYSTEM, title="Maintenance tonight", body="Back by 02:00", data=None):
    return NotificationRecord(
        id=1, user_id=1, category=category, title=title, body=body, data=data or {},
        priority=Priority.MEDIUM, requested_channels=frozenset({Channel.EMAIL}),
        resolved_channels=frozenset({Channel.EMAIL}), status=DeliveryStatus.SENT, delivery_error=None,
        scheduled_for=None, expires_at=None, is_read=False, read_at=None, created_at=NOW,
    )


class TestRendering:
    def test_notification_email(self):
        subject, html, text = render_notification_email(_record(), "ana")
        assert subject == "Maintenance tonight"
        assert "Hi ana" in html and "Back by 02:00" in text

    def test_html_is_escaped(self):
        _, html, text = render_notification_email(_record(body="<script>x</script>"), "ana")
        assert "<script>" not in html
        assert "<script>x</script>" in text

    def test_digest_email(self):
        data = {"frequency": "weekly", "amount_saved": "120.50", "yield_earned": "1.20",
                "achievements_unlocked": 2, "challenges_completed": 1, "streak_days": 1}
        _, html, text = render_digest_email(_record(category=Category.DIGEST, data=data), "ana")
        assert "weekly savings summary" in text
        assert "Saved: 120.50" in text
        assert text.rstrip().endswith("Current streak: 1 day")
        assert "Achievements unlocked: 2" in html


class TestSmtpMailSender:
    def _settings(self, **kw):
        values = {"DATABASE_URL": "sqlite:///:memory:", "EMAIL_SMTP_HOST": "smtp.example.com"}
        values.update(kw)
        return Settings(_env_file=None, **values)

    def test_not_configured(self):
        sender = SmtpMailSender(self._settings(EMAIL_SMTP_HOST=""))
        with pytest.raises(MailNotConfiguredError):
            sender.send("a@example.com", "s", "<p>h</p>", "t")

    def test_sends_multipart_with_login(self):
        sender = SmtpMailSender(self._settings(EMAIL_SMTP_USER="bot", EMAIL_SMTP_PASSWORD="pw"), timeout=4.0)
        server = MagicMock()
        with patch("app.application.email_service.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            sender.send("a@example.com", "Hello", "<p>h</p>", "t")

        smtp.assert_called_once_with("smtp.example.com", 587, timeout=4.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot", "pw")
        from_addr, to_addrs, message = server.sendmail.call_args[0]
        assert from_addr == "noreply@morphsave.com"
        assert to_addrs == ["a@example.com"]
        assert "multipart/alternative" in message

    def test_no_login_without_user(self):
        sender = SmtpMailSender(self._settings())
        server = MagicMock()
        with patch("app.application.email_service.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            sender.send("a@example.com", "Hello", "<p>h</p>", "t")
        server.login.assert_not_called()
