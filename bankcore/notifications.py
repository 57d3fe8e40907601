"""
Notification Module

Notification sender contract, template rendering, and a background dispatcher
for fire-and-forget delivery. A failed delivery is captured and logged, never
raised into the operation that triggered it.
"""

import threading
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional, Tuple

import requests

from .errors import BankCoreError
from .logging_config import get_logger, log_action


class NotificationError(BankCoreError):
    """Template rendering or transport failed"""


@dataclass(frozen=True)
class NotificationTemplate:
    """Named template with {placeholder} subject and body"""
    name: str
    subject_template: str
    body_template: str

    def render(self, data: Dict[str, Any]) -> Tuple[str, str]:
        try:
            return self.subject_template.format(**data), self.body_template.format(**data)
        except (KeyError, IndexError, ValueError) as e:
            raise NotificationError(f"cannot render template {self.name}: {e}") from e


DEFAULT_TEMPLATES = {
    "user_welcome": NotificationTemplate(
        name="user_welcome",
        subject_template="Welcome, {user_name}!",
        body_template=(
            "Hi {user_name},\n\n"
            "Thanks for signing up. Your account ID is {user_id}.\n\n"
            "To activate your account, submit this token within 3 days:\n\n"
            "{token}\n"
        )
    ),
    "loan_request_accepted": NotificationTemplate(
        name="loan_request_accepted",
        subject_template="Your loan request was accepted",
        body_template=(
            "Your request {request_id} for {amount} at {daily_interest_rate}% per day "
            "was accepted and the funds were credited to your account."
        )
    ),
    "loan_request_declined": NotificationTemplate(
        name="loan_request_declined",
        subject_template="Your loan request was declined",
        body_template="Your request {request_id} for {amount} was declined."
    ),
}


class NotificationSender(ABC):
    """Delivers a rendered template to one recipient"""

    def __init__(self, templates: Optional[Dict[str, NotificationTemplate]] = None):
        self.templates = dict(templates or DEFAULT_TEMPLATES)

    def render(self, template_name: str, data: Dict[str, Any]) -> Tuple[str, str]:
        template = self.templates.get(template_name)
        if template is None:
            raise NotificationError(f"unknown template {template_name}")
        return template.render(data)

    @abstractmethod
    def send(self, recipient: str, template_name: str, data: Dict[str, Any]) -> None:
        """Send or raise NotificationError"""
        pass


class LogNotificationSender(NotificationSender):
    """Renders and logs instead of delivering; used in development and tests"""

    def __init__(self, templates: Optional[Dict[str, NotificationTemplate]] = None):
        super().__init__(templates)
        self.logger = get_logger("bankcore.notifications")
        self.sent = []

    def send(self, recipient: str, template_name: str, data: Dict[str, Any]) -> None:
        subject, body = self.render(template_name, data)
        self.sent.append((recipient, template_name, subject, body))
        log_action(
            self.logger, "info", f"Notification to {recipient}: {subject}",
            action="send_notification", resource=f"template:{template_name}"
        )


class WebhookNotificationSender(NotificationSender):
    """POSTs the rendered notification as JSON to a webhook"""

    def __init__(self, url: str, sender: str, timeout: float = 5.0,
                 templates: Optional[Dict[str, NotificationTemplate]] = None):
        super().__init__(templates)
        self.url = url
        self.sender = sender
        self.timeout = timeout

    def send(self, recipient: str, template_name: str, data: Dict[str, Any]) -> None:
        subject, body = self.render(template_name, data)
        payload = {
            "from": self.sender,
            "to": recipient,
            "template": template_name,
            "subject": subject,
            "body": body,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            raise NotificationError(f"webhook delivery to {recipient} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise NotificationError(
                f"webhook delivery to {recipient} failed with status {response.status_code}"
            )


@dataclass
class DeliveryFailure:
    recipient: str
    template_name: str
    error: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationDispatcher:
    """
    Runs sends on a background worker pool.

    dispatch() returns immediately; the caller never observes the outcome.
    Failures land on the dispatcher's error channel (`failures`) and the log.
    """

    def __init__(self, sender: NotificationSender, max_workers: int = 2,
                 max_failures_kept: int = 1000):
        self.sender = sender
        self.logger = get_logger("bankcore.notifications")
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="bankcore-notify"
        )
        self.failures: Deque[DeliveryFailure] = deque(maxlen=max_failures_kept)
        self._failures_lock = threading.Lock()

    def dispatch(self, recipient: str, template_name: str,
                 data: Dict[str, Any]) -> Optional[Future]:
        """Queue a send; None when the pool no longer accepts work"""
        try:
            return self._executor.submit(self._deliver, recipient, template_name, dict(data))
        except RuntimeError as e:
            self._record_failure(recipient, template_name, e)
            return None

    def _deliver(self, recipient: str, template_name: str, data: Dict[str, Any]) -> bool:
        try:
            self.sender.send(recipient, template_name, data)
            return True
        except Exception as e:
            # Never escape the worker: the triggering operation has already returned
            self._record_failure(recipient, template_name, e)
            return False

    def _record_failure(self, recipient: str, template_name: str, error: Exception) -> None:
        with self._failures_lock:
            self.failures.append(DeliveryFailure(recipient, template_name, repr(error)))
        log_action(
            self.logger, "error", f"Notification delivery failed: {error}",
            action="send_notification", resource=f"template:{template_name}",
            extra={"recipient": recipient}, exc_info=error
        )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def create_sender(webhook_url: str, sender: str, timeout: float) -> NotificationSender:
    if webhook_url:
        return WebhookNotificationSender(webhook_url, sender, timeout=timeout)
    return LogNotificationSender()
