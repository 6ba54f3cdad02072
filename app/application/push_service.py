"""
Web Push delivery via pywebpush.

Maps push-service responses onto PushResult: 404/410 mean the endpoint is
gone for good, anything else is transient.
"""
import json
import logging

import requests
from pywebpush import webpush, WebPushException

from app.application.channels import PushResult, PushSender
from app.config import Settings, get_settings
from app.domain.notification import Category, NotificationRecord, Priority, PushEndpoint

logger = logging.getLogger(__name__)

# Seconds the push service keeps an undelivered message
_TTL_BY_PRIORITY = {
    Priority.URGENT: 3600,
    Priority.HIGH: 7200,
    Priority.MEDIUM: 86400,
    Priority.LOW: 604800,
}

_URGENCY_BY_PRIORITY = {
    Priority.URGENT: "high",
    Priority.HIGH: "high",
    Priority.MEDIUM: "normal",
    Priority.LOW: "low",
}


def _notification_actions(category: Category) -> list[dict]:
    actions = [{"action": "view", "title": "View", "icon": "/icons/view.png"}]
    if category == Category.CHALLENGE:
        actions.append({"action": "join_challenge", "title": "Join", "icon": "/icons/join.png"})
    elif category == Category.FRIEND:
        actions.append({"action": "accept_friend", "title": "Accept", "icon": "/icons/accept.png"})
    return actions[:2]


def build_push_payload(record: NotificationRecord) -> dict:
    """
    Payload for the service worker:
        {"title": "...", "body": "...", "data": {"url": "/", ...}, "actions": [...]}
    """
    data = dict(record.data)
    data.update({
        "notification_id": record.id,
        "category": record.category.value,
        "url": data.get("url", "/"),
    })
    return {
        "title": record.title,
        "body": record.body,
        "icon": "/icons/icon-192x192.png",
        "badge": "/icons/badge-72x72.png",
        "data": data,
        "actions": _notification_actions(record.category),
        "requireInteraction": record.priority == Priority.URGENT,
        "silent": record.priority == Priority.LOW,
    }


def _normalize_private_key(raw_key: str) -> str:
    # .env may store PEM with literal \n or real newlines depending on quoting
    if "\\n" in raw_key:
        raw_key = raw_key.replace("\\n", "\n")
    # pywebpush accepts either a PEM string or a raw base64url key; strip PEM armour
    if "BEGIN" in raw_key:
        lines = [line.strip() for line in raw_key.strip().splitlines()
                 if line.strip() and not line.strip().startswith("-----")]
        raw_key = "".join(lines)
    return raw_key


class WebPushSender(PushSender):
    def __init__(self, settings: Settings | None = None, timeout: float | None = None):
        self.settings = settings or get_settings()
        self.timeout = timeout if timeout is not None else self.settings.CHANNEL_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.settings.VAPID_PRIVATE_KEY and self.settings.VAPID_PUBLIC_KEY)

    def send(self, endpoint: PushEndpoint, payload: dict, priority: Priority = Priority.MEDIUM) -> PushResult:
        if not self.configured:
            logger.warning("VAPID keys not configured, skipping push")
            return PushResult.TRANSIENT_ERROR

        priority = Priority(priority)
        try:
            webpush(
                subscription_info=endpoint.subscription_info(),
                data=json.dumps(payload, ensure_ascii=False),
                vapid_private_key=_normalize_private_key(self.settings.VAPID_PRIVATE_KEY),
                vapid_claims={"sub": self.settings.VAPID_MAILTO},
                ttl=_TTL_BY_PRIORITY[priority],
                headers={"Urgency": _URGENCY_BY_PRIORITY[priority]},
                timeout=self.timeout,
            )
            return PushResult.OK
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else 0
            if status_code in (404, 410):
                logger.info("Subscription expired (HTTP %d): %s", status_code, endpoint.endpoint[:60])
                return PushResult.GONE
            logger.error("WebPush error (HTTP %d): %s", status_code, e)
            return PushResult.TRANSIENT_ERROR
        except requests.RequestException as e:
            logger.error("WebPush transport error for %s: %s", endpoint.endpoint[:60], e)
            return PushResult.TRANSIENT_ERROR
