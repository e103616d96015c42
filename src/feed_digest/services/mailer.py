from __future__ import annotations

import logging
import smtplib
import ssl
import threading
from email.message import EmailMessage
from email.utils import format_datetime
from typing import Protocol

from ..config import Settings
from ..errors import DeliveryFailure
from ..schemas import OutboundMail

logger = logging.getLogger(__name__)

# Set by smtplib/email itself; passing them again would duplicate the header.
_MANAGED_HEADERS = {"MIME-Version", "Return-Path"}


class MailTransport(Protocol):
    def send(self, mail: OutboundMail) -> None: ...


def to_email_message(mail: OutboundMail) -> EmailMessage:
    message = EmailMessage()
    message["From"] = mail.from_addr
    message["To"] = mail.to
    message["Reply-To"] = mail.reply_to
    message["Subject"] = mail.subject
    message["Message-ID"] = mail.message_id
    message["Date"] = format_datetime(mail.date)
    for name, value in mail.headers.items():
        if name in _MANAGED_HEADERS:
            continue
        message[name] = value
    message.set_content(mail.text)
    message.add_alternative(mail.html, subtype="html")
    return message


class SmtpTransport:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_ssl: bool = False,
        timeout_seconds: float = 30,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.timeout_seconds = timeout_seconds

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.use_ssl:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout_seconds, context=context)
        client = smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds)
        client.ehlo()
        if client.has_extn("starttls"):
            client.starttls(context=context)
            client.ehlo()
        return client

    def send(self, mail: OutboundMail) -> None:
        message = to_email_message(mail)
        envelope_from = mail.headers.get("Return-Path")
        with self._connect() as client:
            if self.username and self.password:
                client.login(self.username, self.password)
            client.send_message(message, from_addr=envelope_from)


class PreviewTransport:
    """Logs the message instead of sending it; used when no SMTP host is configured."""

    def __init__(self) -> None:
        self.sent: list[OutboundMail] = []

    def send(self, mail: OutboundMail) -> None:
        self.sent.append(mail)
        logger.info("Email preview (SMTP not configured) to=%s subject=%r", mail.to, mail.subject)
        logger.debug("Email preview body:\n%s", mail.text)


def build_transport(settings: Settings) -> MailTransport:
    if settings.preview_mail:
        logger.warning("SMTP_HOST not configured, emails will be logged instead of sent")
        return PreviewTransport()
    return SmtpTransport(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_user,
        password=settings.smtp_pass,
        use_ssl=settings.smtp_secure,
        timeout_seconds=settings.mail_send_timeout_seconds,
    )


class Mailer:
    """Runs each transport call on its own daemon thread and waits at most timeout_seconds for it.

    A hung send never delays the next one; each timeout covers only its own transport call.
    """

    def __init__(self, transport: MailTransport, timeout_seconds: float = 30) -> None:
        self.transport = transport
        self.timeout_seconds = timeout_seconds

    def send(self, mail: OutboundMail) -> None:
        finished = threading.Event()
        errors: list[Exception] = []

        def _deliver() -> None:
            try:
                self.transport.send(mail)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)
            finally:
                finished.set()

        threading.Thread(target=_deliver, name=f"mail-send-{mail.to}", daemon=True).start()
        if not finished.wait(self.timeout_seconds):
            raise DeliveryFailure(f"Email send timeout after {self.timeout_seconds}s to {mail.to}")
        if errors:
            exc = errors[0]
            if isinstance(exc, DeliveryFailure):
                raise exc
            raise DeliveryFailure(f"Failed to send email to {mail.to}: {exc}") from exc
