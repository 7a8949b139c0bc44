"""Tests for Slack operator notifications."""

from __future__ import annotations

from unittest.mock import MagicMock

from slack_sdk.errors import SlackApiError

from agent_fleet.config import NotificationSettings
from agent_fleet.monitoring.notifications import NotificationType, SlackNotifier


class TestSlackNotifier:
    """Tests for SlackNotifier.notify()."""

    def test_posts_to_channel(self, clock) -> None:
        """Verify a configured notifier posts with the type's icon."""
        client = MagicMock()
        notifier = SlackNotifier(NotificationSettings(channel="#fleet", token="x"), client, clock=clock)

        assert notifier.notify(NotificationType.AUTO_BLOCKED, "Auto-blocked: t1", task_id="t1") is True

        client.chat_postMessage.assert_called_once()
        kwargs = client.chat_postMessage.call_args.kwargs
        assert kwargs["channel"] == "#fleet"
        assert kwargs["text"] == ":octagonal_sign: Auto-blocked: t1"
        assert notifier.recent()[-1]["delivered"] is True

    def test_unconfigured_is_recorded_not_sent(self) -> None:
        """Verify notices without a channel are kept in history only."""
        notifier = SlackNotifier(NotificationSettings())

        assert notifier.notify(NotificationType.TASK_BLOCKED, "blocked") is False
        assert notifier.recent()[-1]["message"] == "blocked"
        assert notifier.recent()[-1]["delivered"] is False

    def test_disabled(self) -> None:
        """Verify a disabled notifier never calls Slack."""
        client = MagicMock()
        notifier = SlackNotifier(NotificationSettings(enabled=False, channel="#fleet"), client)

        assert notifier.notify(NotificationType.TASK_BLOCKED, "blocked") is False
        client.chat_postMessage.assert_not_called()

    def test_slack_error_is_swallowed(self) -> None:
        """Verify Slack API errors are logged and reported as undelivered."""
        client = MagicMock()
        client.chat_postMessage.side_effect = SlackApiError("boom", {"error": "channel_not_found"})
        notifier = SlackNotifier(NotificationSettings(channel="#fleet"), client)

        assert notifier.notify(NotificationType.MANUAL_REVIEW, "review") is False

    def test_unexpected_error_is_swallowed(self) -> None:
        """Verify any delivery failure leaves the caller unaffected."""
        client = MagicMock()
        client.chat_postMessage.side_effect = ConnectionError("offline")
        notifier = SlackNotifier(NotificationSettings(channel="#fleet"), client)

        assert notifier.notify(NotificationType.EXECUTOR_PAUSED, "paused") is False

    def test_history_is_bounded(self) -> None:
        """Verify the delivery history keeps only the newest entries."""
        notifier = SlackNotifier(NotificationSettings(), history_size=3)

        for i in range(5):
            notifier.notify(NotificationType.TASK_BLOCKED, f"n{i}")

        assert [n["message"] for n in notifier.recent()] == ["n2", "n3", "n4"]
