"""
Delivery collaborators — the transports the dispatcher fans out to.

Concrete senders live in push_service.py (Web Push) and email_service.py
(SMTP); the real-time transport for in-app delivery is plugged in by the
hosting process.
"""
import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable

from app.domain.notification import Priority, PushEndpoint

logger = logging.getLogger(__name__)


class PushResult(str, Enum):
    OK = "ok"
    GONE = "gone"
    TRANSIENT_ERROR = "transient_error"


class RealtimeBroadcaster(ABC):
    """Best-effort live delivery to a connected client. No retry."""

    @abstractmethod
    def push(self, user_id: int, payload: dict) -> None:
        pass


class PushSender(ABC):
    @abstractmethod
    def send(self, endpoint: PushEndpoint, payload: dict, priority: Priority = Priority.MEDIUM) -> PushResult:
        """Deliver to one device. GONE means the endpoint will never accept again."""


class MailSender(ABC):
    @abstractmethod
    def send(self, address: str, subject: str, html: str, text: str) -> None:
        """Send one message; raises on failure."""


class LoggingBroadcaster(RealtimeBroadcaster):
    """Default broadcaster when no live transport is attached."""

    def push(self, user_id: int, payload: dict) -> None:
        logger.info("In-app broadcast: user_id=%s notification_id=%s", user_id, payload.get("id"))


class LocalBroadcaster(RealtimeBroadcaster):
    """
    In-process fan-out to listeners registered per user (e.g. open
    websocket handlers). A user with no listeners is a silent no-op.
    """

    def __init__(self):
        self._listeners: dict[int, list[Callable[[dict], None]]] = {}
        self._lock = threading.Lock()

    def register(self, user_id: int, listener: Callable[[dict], None]) -> None:
        with self._lock:
            self._listeners.setdefault(user_id, []).append(listener)

    def unregister(self, user_id: int, listener: Callable[[dict], None]) -> None:
        with self._lock:
            listeners = self._listeners.get(user_id, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(user_id, None)

    def push(self, user_id: int, payload: dict) -> None:
        with self._lock:
            listeners = list(self._listeners.get(user_id, []))
        for listener in listeners:
            listener(payload)
