"""
Plain-text business reports sent on the report channels.
"""

from typing import Any, Dict, Iterable, List, Optional
import logging

from tracking.notifications.channels import ChannelDispatcher, ChannelResult, Notification

logger = logging.getLogger(__name__)


def _lines(values: Dict[str, Any], indent: str = "  ") -> List[str]:
    lines = []
    for key, value in values.items():
        label = key.replace("_", " ").capitalize()
        if isinstance(value, dict):
            lines.append(f"{indent}{label}:")
            lines.extend(_lines(value, indent + "  "))
        else:
            lines.append(f"{indent}{label}: {value}")
    return lines


def render_report(title: str, period: str, sections: Dict[str, Dict[str, Any]]) -> Notification:
    body = [f"{title} ({period})", ""]
    for heading, values in sections.items():
        body.append(heading)
        body.extend(_lines(values) or ["  (no data)"])
        body.append("")
    return Notification(
        subject=f"{title}: {period}",
        body="\n".join(body).rstrip() + "\n",
        severity="low",
        alert_type="report",
    )


class ReportSender:
    """Dispatches rendered reports; a failed report is logged, not raised"""

    def __init__(self, dispatcher: ChannelDispatcher, channels: Iterable[str]):
        self.dispatcher = dispatcher
        self.channels = list(channels)

    async def send(
        self,
        title: str,
        period: str,
        sections: Dict[str, Dict[str, Any]],
        channels: Optional[Iterable[str]] = None
    ) -> List[ChannelResult]:
        notification = render_report(title, period, sections)
        results = await self.dispatcher.dispatch(channels or self.channels, notification)
        failed = [r for r in results if not r.success]
        if results and len(failed) == len(results):
            logger.error(f"{title} for {period} could not be sent: {[r.error for r in failed]}")
        elif failed:
            logger.warning(f"{title} for {period} failed on {[r.channel for r in failed]}")
        else:
            logger.info(f"Sent {title} for {period}")
        return results
