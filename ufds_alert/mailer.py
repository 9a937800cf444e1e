"""Outbound mail transports used by the notifier."""
from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from .config import SMTPSettings
from .models import MailMessage

logger = logging.getLogger("ufds_alert.mailer")


class MailDeliveryError(RuntimeError):
    """Raised when a message could not be handed to the mail relay."""


class MailTransport(Protocol):
    """Accepts a composed message and returns the relay's response text."""

    def send_mail(self, message: MailMessage) -> str:  # pragma: no cover - Protocol
        ...


def build_email(message: MailMessage) -> EmailMessage:
    email = EmailMessage()
    email["From"] = message.sender
    email["To"] = ", ".join(message.to)
    email["Subject"] = message.subject
    email.set_content(message.text)
    return email


class SMTPMailer:
    """Deliver messages through an SMTP relay, one connection per message."""

    def __init__(self, settings: SMTPSettings) -> None:
        if not settings.host:
            raise ValueError("SMTP host must be configured to send mail")
        self._settings = settings

    def _open(self) -> smtplib.SMTP:
        settings = self._settings
        context = ssl.create_default_context()
        if settings.use_ssl:
            return smtplib.SMTP_SSL(settings.host, settings.port, context=context, timeout=settings.timeout)

        server = smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout)
        server.ehlo()
        if server.has_extn("starttls"):
            server.starttls(context=context)
            server.ehlo()
        return server

    def send_mail(self, message: MailMessage) -> str:
        if not message.to:
            raise MailDeliveryError("Message has no recipients")

        email = build_email(message)
        try:
            server = self._open()
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(
                f"Failed to connect to {self._settings.host}:{self._settings.port}: {exc}"
            ) from exc

        try:
            if self._settings.username and self._settings.password:
                server.login(self._settings.username, self._settings.password)
            refused = server.send_message(email, from_addr=message.sender, to_addrs=list(message.to))
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"Failed to send mail: {exc}") from exc
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):  # pragma: no cover - best effort shutdown
                server.close()

        if refused:
            return f"Accepted with refused recipients: {', '.join(sorted(refused))}"
        return "250 Message accepted"


class LoggingMailer:
    """Transport that only logs messages; used when no relay is configured."""

    def __init__(self, logger_: logging.Logger | None = None) -> None:
        self._logger = logger_ or logger

    def send_mail(self, message: MailMessage) -> str:
        self._logger.info(
            "Mail to %s: %s\n%s",
            ", ".join(message.to),
            message.subject,
            message.text,
        )
        return "logged"


def build_mailer(settings: SMTPSettings) -> MailTransport:
    if settings.host:
        return SMTPMailer(settings)
    logger.warning("No SMTP host configured; notifications will only be logged")
    return LoggingMailer()


__all__ = [
    "LoggingMailer",
    "MailDeliveryError",
    "MailTransport",
    "SMTPMailer",
    "build_email",
    "build_mailer",
]
