"""
Test suite for notifications module

Template rendering, webhook transport, and the fire-and-forget dispatcher
whose failures never reach the caller.
"""

import threading
import pytest
from unittest.mock import MagicMock, patch

import requests

from bankcore.notifications import (
    DEFAULT_TEMPLATES, LogNotificationSender, NotificationDispatcher, NotificationError,
    NotificationSender, NotificationTemplate, WebhookNotificationSender, create_sender
)


class FailingSender(NotificationSender):

    def __init__(self):
        super().__init__()
        self.calls = 0

    def send(self, recipient, template_name, data):
        self.calls += 1
        raise NotificationError("smtp down")


class BlockingSender(NotificationSender):

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.sent = []

    def send(self, recipient, template_name, data):
        self.release.wait(timeout=5)
        self.sent.append(recipient)


@pytest.fixture
def welcome_data():
    return {"user_id": "A1", "user_name": "Alice", "token": "TOKEN123"}


class TestTemplates:

    def test_render_welcome(self, welcome_data):
        subject, body = DEFAULT_TEMPLATES["user_welcome"].render(welcome_data)

        assert subject == "Welcome, Alice!"
        assert "TOKEN123" in body
        assert "A1" in body

    def test_missing_placeholder(self):
        template = NotificationTemplate("t", "Hi {name}", "Body")
        with pytest.raises(NotificationError):
            template.render({})

    def test_unknown_template(self):
        sender = LogNotificationSender()
        with pytest.raises(NotificationError, match="unknown template"):
            sender.send("alice@example.com", "no_such_template", {})


class TestSenders:

    def test_log_sender_records_message(self, welcome_data):
        sender = LogNotificationSender()
        sender.send("alice@example.com", "user_welcome", welcome_data)

        assert len(sender.sent) == 1
        recipient, template_name, subject, _ = sender.sent[0]
        assert recipient == "alice@example.com"
        assert template_name == "user_welcome"
        assert subject == "Welcome, Alice!"

    def test_webhook_posts_rendered_message(self, welcome_data):
        sender = WebhookNotificationSender("https://hooks.example.com/mail", "bank@example.com")
        response = MagicMock(status_code=202)

        with patch("bankcore.notifications.requests.post", return_value=response) as post:
            sender.send("alice@example.com", "user_welcome", welcome_data)

        args, kwargs = post.call_args
        assert args[0] == "https://hooks.example.com/mail"
        assert kwargs["json"]["to"] == "alice@example.com"
        assert kwargs["json"]["from"] == "bank@example.com"
        assert kwargs["json"]["subject"] == "Welcome, Alice!"
        assert kwargs["timeout"] == 5.0

    def test_webhook_non_2xx_is_error(self, welcome_data):
        sender = WebhookNotificationSender("https://hooks.example.com/mail", "bank@example.com")

        with patch("bankcore.notifications.requests.post", return_value=MagicMock(status_code=500)):
            with pytest.raises(NotificationError, match="status 500"):
                sender.send("alice@example.com", "user_welcome", welcome_data)

    def test_webhook_transport_error(self, welcome_data):
        sender = WebhookNotificationSender("https://hooks.example.com/mail", "bank@example.com")

        with patch("bankcore.notifications.requests.post",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(NotificationError):
                sender.send("alice@example.com", "user_welcome", welcome_data)

    def test_create_sender(self):
        assert isinstance(create_sender("", "bank@example.com", 5.0), LogNotificationSender)
        assert isinstance(
            create_sender("https://hooks.example.com", "bank@example.com", 5.0),
            WebhookNotificationSender
        )


class TestNotificationDispatcher:

    def test_dispatch_does_not_block_caller(self, welcome_data):
        sender = BlockingSender()
        dispatcher = NotificationDispatcher(sender, max_workers=1)

        future = dispatcher.dispatch("alice@example.com", "user_welcome", welcome_data)
        assert not future.done()

        sender.release.set()
        assert future.result(timeout=5) is True
        assert sender.sent == ["alice@example.com"]
        dispatcher.shutdown()

    def test_failure_is_captured_not_raised(self, welcome_data):
        sender = FailingSender()
        dispatcher = NotificationDispatcher(sender)

        future = dispatcher.dispatch("alice@example.com", "user_welcome", welcome_data)

        assert future.result(timeout=5) is False
        dispatcher.shutdown()
        assert sender.calls == 1
        assert len(dispatcher.failures) == 1
        assert dispatcher.failures[0].recipient == "alice@example.com"
        assert "smtp down" in dispatcher.failures[0].error

    def test_dispatch_after_shutdown_is_captured(self, welcome_data):
        dispatcher = NotificationDispatcher(LogNotificationSender())
        dispatcher.shutdown()

        assert dispatcher.dispatch("alice@example.com", "user_welcome", welcome_data) is None
        assert len(dispatcher.failures) == 1

    def test_failures_are_bounded(self, welcome_data):
        dispatcher = NotificationDispatcher(FailingSender(), max_failures_kept=2)

        futures = [
            dispatcher.dispatch(f"user{i}@example.com", "user_welcome", welcome_data)
            for i in range(5)
        ]
        for future in futures:
            future.result(timeout=5)
        dispatcher.shutdown()

        assert len(dispatcher.failures) == 2
