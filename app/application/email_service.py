"""
Email delivery — SMTP sender and message rendering.

Rendering is deliberately minimal: subject + short html/text bodies from
jinja2 templates. Marketing copy and layout live with the front-end.
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from jinja2 import Environment, select_autoescape

from app.application.channels import MailSender
from app.config import Settings, get_settings
from app.domain.notification import NotificationRecord

logger = logging.getLogger(__name__)


class MailNotConfiguredError(RuntimeError):
    pass


_html_env = Environment(autoescape=select_autoescape(default_for_string=True, default=True))
_text_env = Environment(autoescape=False)

_NOTIFICATION_HTML = _html_env.from_string(
    """<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <p>Hi {{ username }},</p>
  <h2>{{ title }}</h2>
  <p>{{ body }}</p>
  <p style="color: #666; font-size: 12px;">You can change which emails you receive in your notification settings.</p>
</div>"""
)

_NOTIFICATION_TEXT = _text_env.from_string(
    """Hi {{ username }},

{{ title }}

{{ body }}
"""
)

_DIGEST_HTML = _html_env.from_string(
    """<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <p>Hi {{ username }},</p>
  <h2>Your {{ period }} savings summary</h2>
  <ul>
    <li>Saved: {{ amount_saved }}</li>
    <li>Yield earned: {{ yield_earned }}</li>
    <li>Achievements unlocked: {{ achievements_unlocked }}</li>
    <li>Challenges completed: {{ challenges_completed }}</li>
    <li>Current streak: {{ streak_days }} day{{ "" if streak_days == 1 else "s" }}</li>
  </ul>
</div>"""
)

_DIGEST_TEXT = _text_env.from_string(
    """Hi {{ username }},

Your {{ period }} savings summary:
- Saved: {{ amount_saved }}
- Yield earned: {{ yield_earned }}
- Achievements unlocked: {{ achievements_unlocked }}
- Challenges completed: {{ challenges_completed }}
- Current streak: {{ streak_days }} day{{ "" if streak_days == 1 else "s" }}
"""
)


def render_notification_email(record: NotificationRecord, username: str) -> tuple[str, str, str]:
    """Return (subject, html, text) for a per-event notification."""
    ctx = {"username": username, "title": record.title, "body": record.body}
    return record.title, _NOTIFICATION_HTML.render(**ctx), _NOTIFICATION_TEXT.render(**ctx)


def render_digest_email(record: NotificationRecord, username: str) -> tuple[str, str, str]:
    """Return (subject, html, text) for a digest; figures come from record.data."""
    data = record.data
    ctx = {
        "username": username,
        "period": data.get("frequency", "weekly"),
        "amount_saved": data.get("amount_saved", "0"),
        "yield_earned": data.get("yield_earned", "0"),
        "achievements_unlocked": data.get("achievements_unlocked", 0),
        "challenges_completed": data.get("challenges_completed", 0),
        "streak_days": data.get("streak_days", 0),
    }
    return record.title, _DIGEST_HTML.render(**ctx), _DIGEST_TEXT.render(**ctx)


class SmtpMailSender(MailSender):
    def __init__(self, settings: Settings | None = None, timeout: float | None = None):
        self.settings = settings or get_settings()
        self.timeout = timeout if timeout is not None else self.settings.CHANNEL_TIMEOUT_SECONDS

    def send(self, address: str, subject: str, html: str, text: str) -> None:
        cfg = self.settings
        if not cfg.EMAIL_SMTP_HOST:
            raise MailNotConfiguredError("SMTP host is not configured")

        msg = MIMEMultipart("alternative")
        msg["From"] = cfg.EMAIL_FROM
        msg["To"] = address
        msg["Subject"] = subject
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))

        with smtplib.SMTP(cfg.EMAIL_SMTP_HOST, cfg.EMAIL_SMTP_PORT, timeout=self.timeout) as server:
            server.starttls()
            if cfg.EMAIL_SMTP_USER:
                server.login(cfg.EMAIL_SMTP_USER, cfg.EMAIL_SMTP_PASSWORD)
            server.sendmail(cfg.EMAIL_FROM, [address], msg.as_string())
        logger.info("Email sent: to=%s subject=%s", address, subject)
