"""
auth/mailer.py -- Mail dispatch contract and transports.

The code service only depends on the MailDispatcher protocol: one send()
call that either returns or raises. Two transports implement it:

  SmtpMailDispatcher -- smtplib over implicit TLS (port 465) or STARTTLS,
      bounded by Settings.mail_timeout_seconds so a stuck relay cannot hold
      a request open. Any transport failure becomes InternalError.

  MockMailDispatcher -- logs a masked line and keeps the message in memory.
      Used when SMTP_MOCK=true, or in dev mode when no SMTP credentials are
      configured.

In production without SMTP credentials the SMTP transport is still chosen;
it raises InternalError on first use instead of silently dropping mail.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from core.config import Settings
from core.errors import InternalError

logger = logging.getLogger("adminauth.mail")


def _mask(address: str) -> str:
    if "@" not in address:
        return "***"
    user, domain = address.split("@", 1)
    return f"{user[:1]}***@{domain}"


@dataclass
class OutgoingMail:
    to: str
    subject: str
    text: str
    html: str | None = None


class MailDispatcher(Protocol):
    def send(self, mail: OutgoingMail) -> None: ...


class SmtpMailDispatcher:
    """Deliver mail through a real SMTP relay."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _build_message(self, mail: OutgoingMail) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = mail.subject
        msg["From"] = self._settings.smtp_from or self._settings.smtp_user
        msg["To"] = mail.to
        msg.set_content(mail.text)
        if mail.html:
            msg.add_alternative(mail.html, subtype="html")
        return msg

    def send(self, mail: OutgoingMail) -> None:
        cfg = self._settings
        if not cfg.has_smtp:
            raise InternalError("SMTP configuration missing.")

        msg = self._build_message(mail)
        ctx = ssl.create_default_context()
        try:
            if cfg.smtp_secure:
                with smtplib.SMTP_SSL(cfg.smtp_host, cfg.smtp_port, context=ctx, timeout=cfg.mail_timeout_seconds) as s:
                    s.login(cfg.smtp_user, cfg.smtp_password)
                    s.send_message(msg)
            else:
                with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.mail_timeout_seconds) as s:
                    s.starttls(context=ctx)
                    s.login(cfg.smtp_user, cfg.smtp_password)
                    s.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Mail to %s via %s:%d failed: %r", _mask(mail.to), cfg.smtp_host, cfg.smtp_port, exc)
            raise InternalError("Failed to send email.") from exc
        logger.info("Mail sent to %s via %s:%d", _mask(mail.to), cfg.smtp_host, cfg.smtp_port)


class MockMailDispatcher:
    """Keep mail in memory instead of sending it."""

    def __init__(self) -> None:
        self.outbox: list[OutgoingMail] = []

    def send(self, mail: OutgoingMail) -> None:
        self.outbox.append(mail)
        logger.info("Mock mail to %s: %s", _mask(mail.to), mail.subject)


def build_mail_dispatcher(settings: Settings) -> MailDispatcher:
    """Pick the transport for the current configuration."""
    if settings.smtp_mock or (settings.debug and not settings.has_smtp):
        logger.info("Using mock mail transport")
        return MockMailDispatcher()
    return SmtpMailDispatcher(settings)


def login_code_mail(email: str, code: str, ttl_minutes: int) -> OutgoingMail:
    text = f"Your login code is {code}. It expires in {ttl_minutes} minutes."
    html = f"<p>Your login code is <strong>{code}</strong>.</p><p>It expires in {ttl_minutes} minutes.</p>"
    return OutgoingMail(to=email, subject="Your login code", text=text, html=html)
