"""
Best-effort deployment notifications.
"""

import logging
from typing import Optional

import requests

from .errors import NotificationFailed

logger = logging.getLogger(__name__)


def send_slack_notification(webhook_url: str, text: str, timeout: float = 10.0) -> None:
    """
    Post a message to a Slack incoming webhook.

    Raises:
        NotificationFailed: On any delivery problem
    """
    try:
        response = requests.post(webhook_url, json={"text": text}, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise NotificationFailed(f"Slack webhook request failed: {e}")

    if response.status_code >= 300:
        raise NotificationFailed(f"Slack webhook returned HTTP {response.status_code}")


class Notifier:
    """Sends run notifications if a webhook is configured."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def notify(self, text: str) -> bool:
        """
        Send ``text``. Returns False if nothing was sent.

        Raises:
            NotificationFailed: If sending failed
        """
        if not self.enabled:
            return False
        logger.info("Sending deployment notification...")
        send_slack_notification(self.webhook_url, text, self.timeout)
        return True
