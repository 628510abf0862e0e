from unittest.mock import Mock, patch

import pytest
import requests

from deployctl.errors import NotificationFailed
from deployctl.notify import Notifier, send_slack_notification

WEBHOOK = "https://hooks.slack.com/services/T000/B000/XXXX"


class TestSlack:
    def test_posts_text(self):
        with patch('requests.post') as mock_post:
            mock_post.return_value = Mock(status_code=200)

            send_slack_notification(WEBHOOK, "✅ app deployed to production environment successfully!")

            mock_post.assert_called_once_with(
                WEBHOOK,
                json={"text": "✅ app deployed to production environment successfully!"},
                timeout=10.0,
            )

    def test_http_error(self):
        with patch('requests.post') as mock_post:
            mock_post.return_value = Mock(status_code=404)

            with pytest.raises(NotificationFailed, match="404"):
                send_slack_notification(WEBHOOK, "hi")

    def test_request_exception(self):
        with patch('requests.post') as mock_post:
            mock_post.side_effect = requests.exceptions.ConnectionError("no route")

            with pytest.raises(NotificationFailed) as exc_info:
                send_slack_notification(WEBHOOK, "hi")

        assert not exc_info.value.fatal


class TestNotifier:
    def test_disabled_without_webhook(self):
        with patch('requests.post') as mock_post:
            assert Notifier(None).notify("hi") is False
            mock_post.assert_not_called()

    def test_enabled(self):
        with patch('requests.post') as mock_post:
            mock_post.return_value = Mock(status_code=200)
            assert Notifier(WEBHOOK, timeout=3).notify("hi") is True
            assert mock_post.call_args.kwargs["timeout"] == 3
