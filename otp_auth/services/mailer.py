from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Outbound email could not be handed to the transport."""


class Notifier(Protocol):
    async def send(self, *, to: str, subject: str, body: str) -> None: ...


class SmtpNotifier:
    """Plain-text mail over SMTP (gmail by default), run off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._host = settings.SMTP_HOST
        self._port = settings.SMTP_PORT
        self._user = settings.SMTP_USER
        self._password = settings.SMTP_PASSWORD
        self._sender: Optional[str] = settings.smtp_sender
        self._use_tls = settings.SMTP_USE_TLS
        self._timeout = settings.SMTP_TIMEOUT_SEC
        missing = [
            key
            for key, value in [
                ("SMTP_HOST", self._host),
                ("SMTP_FROM or SMTP_USER", self._sender),
            ]
            if not value
        ]
        if missing:
            logger.warning("SMTP notifier misconfigured; missing settings: %s", ", ".join(missing))

    def _build(self, to: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._sender or ""
        msg["To"] = to
        msg.set_content(body)
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            if self._use_tls:
                smtp.starttls()
            if self._user and self._password:
                smtp.login(self._user, self._password)
            smtp.send_message(msg)

    async def send(self, *, to: str, subject: str, body: str) -> None:
        if not self._sender:
            raise DeliveryError("SMTP sender is not configured")
        msg = self._build(to, subject, body)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP send to %s failed: %s", to, exc)
            raise DeliveryError(str(exc)) from exc


class LogNotifier:
    """DEV sender: logs the message instead of mailing it."""

    async def send(self, *, to: str, subject: str, body: str) -> None:
        logger.info("[DEV] email to %s | %s | %s", to, subject, body)


def build_notifier(settings: Settings) -> Notifier:
    if settings.EMAIL_BACKEND == "smtp":
        return SmtpNotifier(settings)
    return LogNotifier()


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    # built once per process, shared by every request
    global _notifier
    if _notifier is None:
        _notifier = build_notifier(get_settings())
    return _notifier
