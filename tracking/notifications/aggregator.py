"""
Notification aggregator: collapses bursts of similar alerts.

Alerts are bucketed by (alert_type, message template). A bucket stays open
for one aggregation window; flushing sends one notification per bucket with
its occurrence count and time span, then closes it.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union
import logging
import re

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from models.base import AlertStatus, Severity
from models.notification import NotificationAlert
from tracking.locks import KeyedLocks
from tracking.notifications.channels import ChannelDispatcher, Notification

logger = logging.getLogger(__name__)

_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}

_HEX_ID = re.compile(r"\b(?=[0-9a-fA-F-]*\d)[0-9a-fA-F]{8,}(?:-[0-9a-fA-F]{4,})*\b")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")


def message_template(message: str) -> str:
    """
    Strip variable parts so similar messages share a bucket.

    "Order ORD-123 delayed 2 days" -> "Order ORD-# delayed # days"
    """
    template = _HEX_ID.sub("#", message)
    template = _NUMBER.sub("#", template)
    return template[:500]


class NotificationAggregator:
    """
    Persisted alert buckets with windowed, severity-routed dispatch.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: ChannelDispatcher,
        severity_channels: Dict[str, List[str]],
        window_seconds: float = 300,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.severity_channels = severity_channels
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock
        self.locks = KeyedLocks()

    def channels_for(self, severity: Severity) -> List[str]:
        return list(self.severity_channels.get(severity.value, []))

    async def record(
        self,
        alert_type: str,
        severity: Union[Severity, str],
        message: str
    ) -> NotificationAlert:
        """
        Open or update the bucket for ``(alert_type, template(message))``.

        The bucket keeps the highest severity seen and the latest message.
        """
        severity = Severity(severity)
        template = message_template(message)
        now = self.clock()

        async with self.locks.hold((alert_type, template)):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(NotificationAlert).where(
                        NotificationAlert.alert_type == alert_type,
                        NotificationAlert.message_template == template,
                        NotificationAlert.status == AlertStatus.PENDING
                    ).order_by(NotificationAlert.first_seen_at.desc())
                )
                alert = result.scalars().first()

                if alert is None:
                    alert = NotificationAlert(
                        alert_type=alert_type,
                        message_template=template,
                        severity=severity,
                        message=message,
                        first_seen_at=now,
                        last_seen_at=now,
                        occurrence_count=1,
                        channels=self.channels_for(severity),
                        status=AlertStatus.PENDING,
                    )
                    session.add(alert)
                    logger.info(f"Opened {severity.value} alert bucket {alert_type}: {template}")
                else:
                    alert.occurrence_count += 1
                    alert.last_seen_at = now
                    alert.message = message
                    if _SEVERITY_RANK[severity] > _SEVERITY_RANK[Severity(alert.severity)]:
                        alert.severity = severity
                        alert.channels = self.channels_for(severity)

                await session.commit()
                return alert

    async def flush(self, force: bool = False) -> List[NotificationAlert]:
        """
        Dispatch every pending bucket whose window has elapsed.

        Args:
            force: Dispatch all pending buckets regardless of window

        Returns:
            Buckets closed by this flush
        """
        now = self.clock()
        query = select(NotificationAlert.id, NotificationAlert.alert_type, NotificationAlert.message_template).where(
            NotificationAlert.status == AlertStatus.PENDING
        )
        if not force:
            query = query.where(NotificationAlert.first_seen_at <= now - self.window)

        async with self.session_factory() as session:
            due = (await session.execute(query.order_by(NotificationAlert.first_seen_at))).all()

        closed = []
        for alert_id, alert_type, template in due:
            async with self.locks.hold((alert_type, template)):
                alert = await self._dispatch(alert_id)
            if alert is not None:
                closed.append(alert)

        if closed:
            logger.info(f"Flushed {len(closed)} alert buckets")
        return closed

    async def _dispatch(self, alert_id: str) -> Optional[NotificationAlert]:
        async with self.session_factory() as session:
            alert = await session.get(NotificationAlert, alert_id)
            if alert is None or alert.status != AlertStatus.PENDING:
                return None

            notification = self.render(alert)
            results = await self.dispatcher.dispatch(alert.channels or [], notification)

            alert.channel_results = [r.to_dict() for r in results]
            alert.status = AlertStatus.SENT if any(r.success for r in results) else AlertStatus.FAILED
            alert.dispatched_at = self.clock()
            await session.commit()

        if alert.status == AlertStatus.FAILED:
            logger.error(
                f"Alert {alert.alert_type} could not be delivered on any channel: "
                f"{[r.error for r in results]}"
            )
        else:
            failed = [r.channel for r in results if not r.success]
            if failed:
                logger.warning(f"Alert {alert.alert_type} sent, but channels {failed} failed")
        return alert

    def render(self, alert: NotificationAlert) -> Notification:
        severity = Severity(alert.severity).value
        span = alert.last_seen_at - alert.first_seen_at
        if alert.occurrence_count == 1:
            summary = f"Seen once at {alert.first_seen_at.isoformat()} UTC."
        else:
            summary = (
                f"Seen {alert.occurrence_count} times between {alert.first_seen_at.isoformat()} "
                f"and {alert.last_seen_at.isoformat()} UTC ({int(span.total_seconds())}s)."
            )
        body = f"{alert.message}\n\n{summary}\n\nAlert type: {alert.alert_type}\nSeverity: {severity}"
        subject = f"{alert.alert_type}: {alert.message}"
        if alert.occurrence_count > 1:
            subject = f"{subject} (x{alert.occurrence_count})"
        return Notification(subject=subject[:200], body=body, severity=severity, alert_type=alert.alert_type)

    async def recent(self, limit: int = 50) -> List[NotificationAlert]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(NotificationAlert).order_by(NotificationAlert.last_seen_at.desc()).limit(limit)
            )
            return list(result.scalars().all())
