"""
Notification delivery.

``NotificationSink`` is what the application layer talks to. In production
``PlatformNotificationSink`` stores admin notifications in the database,
pushes them on a Redis channel for live dashboards and sends customer email
through SendGrid. Each transport degrades to logging when not configured.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import redis

from app.core_settings import Settings
from app.infrastructure.repository import NotificationRepository
from shared.core import get_logger

logger = get_logger(__name__)


class NotificationSink(ABC):
    @abstractmethod
    def notify_admin(self, event_type: str, message: str, data: Dict[str, Any]) -> None:
        """Persist an admin notification and push it to connected dashboards."""

    @abstractmethod
    def send_email(self, to: str, subject: str, body: str) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    def notify_admin(self, event_type: str, message: str, data: Dict[str, Any]) -> None:
        logger.info(f"Admin notification: {message}", extra={'extra_fields': {'event_type': event_type}})

    def send_email(self, to: str, subject: str, body: str) -> None:
        logger.info(f"Email to {to}: {subject}")


class RedisBroadcaster:
    """Publishes admin events on a pub/sub channel."""

    def __init__(self, url: str, channel: str):
        self.channel = channel
        self.client = redis.from_url(url, decode_responses=True, socket_connect_timeout=2)

    def publish(self, event_type: str, message: str, data: Dict[str, Any]) -> int:
        payload = json.dumps({"type": event_type, "message": message, "data": data}, default=str)
        return self.client.publish(self.channel, payload)


class SendGridMailer:
    """SendGrid v3 mail send over plain HTTP."""

    def __init__(self, api_key: str, sender: str, base_url: str = "https://api.sendgrid.com",
                 timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.api_key = api_key
        self.sender = sender
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def send(self, to: str, subject: str, body: str) -> None:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.sender},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            response = client.post(
                "/v3/mail/send",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        response.raise_for_status()


class PlatformNotificationSink(NotificationSink):
    def __init__(
        self,
        store: Optional[NotificationRepository] = None,
        broadcaster: Optional[RedisBroadcaster] = None,
        mailer: Optional[SendGridMailer] = None,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.mailer = mailer

    def notify_admin(self, event_type: str, message: str, data: Dict[str, Any]) -> None:
        if self.store is not None:
            self.store.add(event_type, message, data)
        if self.broadcaster is not None:
            self.broadcaster.publish(event_type, message, data)
        else:
            logger.info(f"Admin notification: {message}", extra={'extra_fields': {'event_type': event_type}})

    def send_email(self, to: str, subject: str, body: str) -> None:
        if self.mailer is None:
            logger.info(f"Email delivery not configured, skipping '{subject}' to {to}")
            return
        self.mailer.send(to, subject, body)


def build_broadcaster(settings: Settings) -> Optional[RedisBroadcaster]:
    if not settings.REDIS_URL:
        return None
    return RedisBroadcaster(settings.REDIS_URL, settings.ADMIN_NOTIFICATION_CHANNEL)


def build_mailer(settings: Settings) -> Optional[SendGridMailer]:
    if not settings.SENDGRID_API_KEY:
        return None
    return SendGridMailer(settings.SENDGRID_API_KEY, settings.EMAIL_FROM, settings.SENDGRID_BASE_URL)
