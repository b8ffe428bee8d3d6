"""Run completion notifications."""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Optional, Protocol

import structlog

from ..core.config import NotificationChannelConfig

logger = structlog.get_logger()


@dataclass
class NotificationMessage:
    """Summary of a finished run sent to notification channels."""
    automation_id: str
    automation_name: str
    project_id: str
    project_name: str
    run_id: str
    status: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: str = ""
    output_files: list[str] = field(default_factory=list)
    logs_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_time"] = self.start_time.isoformat() if self.start_time else None
        data["end_time"] = self.end_time.isoformat() if self.end_time else None
        return data


class NotificationService(Protocol):
    async def dispatch(
        self, message: NotificationMessage, channels: list[NotificationChannelConfig]
    ) -> None: ...


def channels_for(
    message: NotificationMessage, channels: list[NotificationChannelConfig]
) -> list[NotificationChannelConfig]:
    """Channels that want this message: completed runs on on_complete, failed runs on on_error."""
    selected = []
    for channel in channels:
        if message.status == "completed" and channel.on_complete:
            selected.append(channel)
        elif message.status == "failed" and channel.on_error:
            selected.append(channel)
    return selected


class LoggingNotificationService:
    """
    Records notifications in the log instead of delivering them.

    Transports (Slack, email, webhook) live outside the runner; this
    service keeps the dispatch boundary exercised when running locally.
    """

    def __init__(self):
        self.sent: list[tuple[str, NotificationMessage]] = []

    async def dispatch(
        self, message: NotificationMessage, channels: list[NotificationChannelConfig]
    ) -> None:
        for channel in channels_for(message, channels):
            logger.info(
                "notification_dispatched",
                channel_type=channel.type,
                channel_id=channel.id,
                automation_id=message.automation_id,
                run_id=message.run_id,
                status=message.status,
                output_files=len(message.output_files),
                logs_count=message.logs_count,
            )
            self.sent.append((channel.id, message))
