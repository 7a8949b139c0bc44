"""Operator notifications for blocked tasks and executor pauses."""

from __future__ import annotations

import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from agent_fleet.config import NotificationSettings
from agent_fleet.monitoring.logging import get_logger

logger = get_logger(__name__)


class NotificationType(str, Enum):
    """Kinds of notices the orchestrator sends to humans."""

    TASK_BLOCKED = "task_blocked"  # Status moved to blocked
    AUTO_BLOCKED = "auto_blocked"  # Recovery gave up on a task
    MANUAL_REVIEW = "manual_review"  # Repeated failures need a human
    EXECUTOR_PAUSED = "executor_paused"
    OWNERSHIP_CONFLICT = "ownership_conflict"


NOTIFICATION_ICONS = {
    NotificationType.TASK_BLOCKED: ":no_entry:",
    NotificationType.AUTO_BLOCKED: ":octagonal_sign:",
    NotificationType.MANUAL_REVIEW: ":warning:",
    NotificationType.EXECUTOR_PAUSED: ":double_vertical_bar:",
    NotificationType.OWNERSHIP_CONFLICT: ":crossed_swords:",
}


class SlackNotifier:
    """Fire-and-forget Slack notices.

    Delivery failures are logged and swallowed: a broken notification
    channel must never fail the orchestration path.
    """

    def __init__(
        self,
        settings: Optional[NotificationSettings] = None,
        slack_client: Optional[Any] = None,
        *,
        clock: Callable[[], float] = time.time,
        history_size: int = 100,
    ):
        """Initialize the notifier.

        Args:
            settings: Channel, token and enable switch
            slack_client: Slack WebClient; built from the token when omitted
            clock: Time source for the delivery history
            history_size: Number of recent notices kept for status output
        """
        self.settings = settings or NotificationSettings()
        if slack_client is None and self.settings.token:
            slack_client = WebClient(token=self.settings.token)
        self.slack_client = slack_client
        self._clock = clock
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)

    def notify(
        self,
        notification_type: NotificationType,
        message: str,
        *,
        task_id: Optional[str] = None,
    ) -> bool:
        """Send a notice. Returns True when Slack accepted it."""
        entry = {
            "type": notification_type.value,
            "message": message,
            "task_id": task_id,
            "at": self._clock(),
            "delivered": False,
        }
        self._history.append(entry)

        if not self.settings.enabled:
            return False
        if not self.settings.channel or not self.slack_client:
            logger.debug(
                "notification.not_configured",
                notification_type=notification_type.value,
                task_id=task_id,
            )
            return False

        icon = NOTIFICATION_ICONS.get(notification_type, ":information_source:")
        try:
            self.slack_client.chat_postMessage(
                channel=self.settings.channel,
                text=f"{icon} {message}",
                unfurl_links=False,
                unfurl_media=False,
            )
        except SlackApiError as e:
            logger.warning(
                "notification.slack_error",
                notification_type=notification_type.value,
                task_id=task_id,
                error=e.response.get("error") if e.response is not None else str(e),
            )
            return False
        except Exception as e:
            logger.warning(
                "notification.send_failed",
                notification_type=notification_type.value,
                task_id=task_id,
                error=str(e),
            )
            return False

        entry["delivered"] = True
        logger.debug("notification.sent", notification_type=notification_type.value, task_id=task_id)
        return True

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return list(self._history)[-limit:]
