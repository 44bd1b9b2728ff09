"""
SMS senders.

A sender delivers one already-rendered message to one phone number and raises on
failure; the dispatcher decides what a failure means (nothing, beyond a log line).
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from gfcity.config.settings import AfricasTalkingSettings
from gfcity.core.http import post_form

logger = logging.getLogger(__name__)


class SmsSender(Protocol):
    def send(self, contact: str, message: str) -> None: ...


class LogSender:
    """Used when no SMS credentials are configured: log the message and move on."""

    def send(self, contact: str, message: str) -> None:
        logger.warning("SMS service not configured; skipping SMS to %s: %s", contact, message)


class AfricasTalkingSender:
    """Africa's Talking bulk SMS API (form-encoded POST, `apiKey` header)."""

    def __init__(self, settings: AfricasTalkingSettings, *, timeout_seconds: float = 15):
        if not settings.api_key:
            raise ValueError("AfricasTalkingSender needs an api_key")
        self._settings = settings
        self._timeout_seconds = float(timeout_seconds)

    def send(self, contact: str, message: str) -> None:
        payload = post_form(
            self._settings.base_url,
            data={
                "username": self._settings.username,
                "to": contact,
                "message": message,
                "from": self._settings.sender_id,
            },
            headers={"apiKey": str(self._settings.api_key)},
            timeout_seconds=self._timeout_seconds,
        )
        recipients = ((payload or {}).get("SMSMessageData") or {}).get("Recipients") or []
        failed = [r for r in recipients if str(r.get("status", "")).lower() != "success"]
        if not recipients or failed:
            raise httpx.HTTPError(f"SMS not accepted for {contact}: {payload!r}")
        logger.info("SMS sent to %s", contact)
