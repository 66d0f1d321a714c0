"""
Outbound notification channels.

Each channel delivers one rendered message and reports a ChannelResult; a
failing channel never blocks the others.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Dict, Iterable, List, Optional
import asyncio
import logging
import smtplib

import httpx

from core.exceptions import NotificationError

logger = logging.getLogger(__name__)

_SUBJECT_PREFIX = {
    "low": "[INFO]",
    "medium": "[WARN]",
    "high": "[ALERT]",
    "critical": "[CRITICAL]",
}


@dataclass
class Notification:
    """A rendered notification ready for dispatch"""
    subject: str
    body: str
    severity: str = "low"
    alert_type: str = ""


@dataclass
class ChannelResult:
    """Outcome of sending one notification on one channel"""
    channel: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"channel": self.channel, "success": self.success, "error": self.error}


class NotificationChannel(ABC):
    """Base class for notification channels"""

    name: str = "channel"

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the channel has the settings it needs"""

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """
        Deliver a notification.

        Raises:
            NotificationError: Delivery failed
        """

    async def check(self) -> bool:
        """Health probe; configured channels are assumed reachable"""
        return self.is_configured


class EmailChannel(NotificationChannel):
    """SMTP email with STARTTLS; smtplib runs in a worker thread"""

    name = "email"

    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "tracking@localhost",
        recipients: Iterable[str] = (),
        timeout: float = 15.0
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.recipients = [r.strip() for r in recipients if r and r.strip()]
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.recipients)

    def build_message(self, notification: Notification) -> EmailMessage:
        prefix = _SUBJECT_PREFIX.get(notification.severity, "[INFO]")
        message = EmailMessage()
        message["Subject"] = f"{prefix} {notification.subject}"
        message["From"] = self.sender
        message["To"] = ", ".join(self.recipients)
        message.set_content(notification.body)
        return message

    def _send_sync(self, message: EmailMessage):
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.send_message(message)

    async def send(self, notification: Notification) -> None:
        if not self.is_configured:
            raise NotificationError(
                "Email channel not configured (missing SMTP_HOST or recipients)",
                context={"channel": self.name, "alert_type": notification.alert_type}
            )
        message = self.build_message(notification)
        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(
                f"SMTP error: {e}",
                context={"channel": self.name, "alert_type": notification.alert_type},
                original_exception=e
            )


class PagerChannel(NotificationChannel):
    """Posts high-urgency alerts to an incident webhook"""

    name = "pager"

    def __init__(
        self,
        webhook_url: Optional[str],
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, notification: Notification) -> None:
        if not self.is_configured:
            raise NotificationError(
                "Pager channel not configured (missing PAGER_WEBHOOK_URL)",
                context={"channel": self.name, "alert_type": notification.alert_type}
            )
        payload = {
            "summary": notification.subject,
            "details": notification.body,
            "severity": notification.severity,
            "alert_type": notification.alert_type,
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.webhook_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            raise NotificationError(
                f"Pager webhook unreachable: {e}",
                context={"channel": self.name, "alert_type": notification.alert_type},
                original_exception=e
            )
        if response.status_code >= 400:
            raise NotificationError(
                f"Pager webhook returned {response.status_code}",
                context={
                    "channel": self.name,
                    "alert_type": notification.alert_type,
                    "status_code": response.status_code
                }
            )


class ChannelDispatcher:
    """
    Concurrent fan-out over named channels.

    Every channel gets its own timeout; an unknown, failing or slow channel
    only marks its own result as failed.
    """

    def __init__(self, channels: Dict[str, NotificationChannel], timeout: float = 10.0):
        self.channels = dict(channels)
        self.timeout = timeout

    async def _send_one(self, name: str, notification: Notification) -> ChannelResult:
        channel = self.channels.get(name)
        if channel is None:
            return ChannelResult(channel=name, success=False, error="Unknown channel")
        try:
            await asyncio.wait_for(channel.send(notification), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Channel {name} timed out sending {notification.alert_type}")
            return ChannelResult(channel=name, success=False, error=f"Timed out after {self.timeout}s")
        except NotificationError as e:
            logger.warning(f"Channel {name} failed: {e.message}", extra={"error_context": e.to_dict()})
            return ChannelResult(channel=name, success=False, error=e.message)
        except Exception as e:
            logger.exception(f"Unexpected failure on channel {name}")
            return ChannelResult(channel=name, success=False, error=f"{type(e).__name__}: {e}")
        return ChannelResult(channel=name, success=True)

    async def dispatch(self, channel_names: Iterable[str], notification: Notification) -> List[ChannelResult]:
        names = list(dict.fromkeys(channel_names))
        if not names:
            return []
        return list(await asyncio.gather(*(self._send_one(name, notification) for name in names)))

    async def check(self) -> Dict[str, bool]:
        """Health of every registered channel"""
        status = {}
        for name, channel in self.channels.items():
            try:
                status[name] = await asyncio.wait_for(channel.check(), timeout=self.timeout)
            except Exception as e:
                logger.warning(f"Health check for channel {name} failed: {e}")
                status[name] = False
        return status
