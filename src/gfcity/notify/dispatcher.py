"""
Notification dispatcher.

`notify()` is fire-and-forget: it renders the template, hands the message to the
sender (on a worker thread when an executor is configured) and returns. Nothing
a sender does, including raising, reaches the caller, so a broken SMS provider
can never undo a payment or report state change.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from enum import Enum
from typing import Any, Mapping

from gfcity.config.settings import NotificationSettings, Settings
from gfcity.notify.sms import AfricasTalkingSender, LogSender, SmsSender

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    REPORT_ASSIGNED = "report_assigned"
    COLLECTION_COMPLETED = "collection_completed"
    WELCOME = "welcome"


class NotificationDispatcher:
    def __init__(
        self,
        sender: SmsSender,
        *,
        templates: Mapping[str, str],
        enabled: bool = True,
        executor: Executor | None = None,
    ):
        self._sender = sender
        self._templates = dict(templates)
        self._enabled = enabled
        self._executor = executor

    def render(self, kind: NotificationKind, parameters: Mapping[str, Any]) -> str:
        template = self._templates.get(kind.value)
        if template is None:
            raise KeyError(f"no template configured for notification kind '{kind.value}'")
        return template.format(**parameters)

    def notify(self, contact: str | None, kind: NotificationKind, parameters: Mapping[str, Any]) -> None:
        if not self._enabled:
            return
        if not contact:
            logger.warning("Dropping %s notification: recipient has no contact.", kind.value)
            return
        try:
            message = self.render(kind, parameters)
        except (KeyError, IndexError, ValueError) as exc:
            logger.error("Cannot render %s notification: %s", kind.value, exc)
            return
        if self._executor is None:
            self._deliver(contact, kind, message)
            return
        try:
            self._executor.submit(self._deliver, contact, kind, message)
        except RuntimeError as exc:
            # Executor already shut down (process is stopping).
            logger.warning("Dropping %s notification to %s: %s", kind.value, contact, exc)

    def _deliver(self, contact: str, kind: NotificationKind, message: str) -> None:
        try:
            self._sender.send(contact, message)
        except Exception:
            logger.exception("Failed to deliver %s notification to %s", kind.value, contact)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)


def build_sender(settings: NotificationSettings, *, timeout_seconds: float = 15) -> SmsSender:
    if settings.africastalking.api_key:
        return AfricasTalkingSender(settings.africastalking, timeout_seconds=timeout_seconds)
    logger.warning("Africa's Talking credentials not configured - SMS disabled")
    return LogSender()


def build_dispatcher(settings: Settings, *, sender: SmsSender | None = None) -> NotificationDispatcher:
    ns = settings.notifications
    executor = ThreadPoolExecutor(max_workers=ns.max_workers, thread_name_prefix="gfcity-notify") if ns.max_workers > 0 else None
    return NotificationDispatcher(
        sender or build_sender(ns, timeout_seconds=settings.app.http_timeout_seconds),
        templates=ns.templates,
        enabled=ns.enabled,
        executor=executor,
    )
