"""Email sink — builds a message per batch and hands it to a mailer.

A single-record batch becomes one message; a larger batch becomes a digest
with one section per record, in order.  Message bodies use the
destination's ``template`` (``string.Template`` syntax) or the pretty
printed payload.

The default ``SmtpMailer`` sends through ``smtplib`` on a worker thread.
SMTP 5xx replies and refused recipients are permanent; 4xx replies and
connection failures are transient.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from sinkrelay.core.errors import PermanentDeliveryError, TransientDeliveryError
from sinkrelay.models.batches import Batch
from sinkrelay.models.destinations import DestinationType, EmailConfig, load_destination_config
from sinkrelay.routing.sinks._formatting import format_subject, render_digest, render_record

logger = logging.getLogger(__name__)


class EmailPayload(BaseModel):
    """An email message ready for SMTP delivery."""

    model_config = ConfigDict(frozen=True)

    recipients: list[str]
    sender: str
    subject: str
    body_text: str
    headers: dict[str, str] = {}

    def to_message(self) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = ", ".join(self.recipients)
        message["Subject"] = self.subject
        for name, value in self.headers.items():
            message[name] = value
        message.set_content(self.body_text)
        return message


@runtime_checkable
class Mailer(Protocol):
    """Blocking mail transport.  Called from a worker thread."""

    def send(self, payload: EmailPayload) -> None:
        ...


class SmtpMailer:
    """Sends messages over SMTP, one connection per message."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 25,
        *,
        use_tls: bool = False,
        username: str = "",
        password: str = "",
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._use_tls = use_tls
        self._username = username
        self._password = password
        self._timeout = timeout

    def send(self, payload: EmailPayload) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            if self._use_tls:
                smtp.starttls()
            if self._username:
                smtp.login(self._username, self._password)
            smtp.send_message(payload.to_message())


class EmailSink:
    """Delivers batches as email messages.

    Parameters
    ----------
    mailer:
        Transport for built messages.  Defaults to ``SmtpMailer()``.
    sender:
        The From address.
    """

    def __init__(self, mailer: Mailer | None = None, sender: str = "sinkrelay@localhost") -> None:
        self._mailer = mailer or SmtpMailer()
        self._sender = sender

    @property
    def sink_name(self) -> str:
        return "email"

    @property
    def destination_type(self) -> DestinationType:
        return DestinationType.EMAIL

    def build_payload(self, batch: Batch) -> EmailPayload:
        """Build the message for *batch* without sending it."""
        config = load_destination_config(EmailConfig, batch.destination_config)
        if batch.size == 1:
            body = render_record(batch.records[0], config.template)
        else:
            body = render_digest(batch.records, config.template)
        return EmailPayload(
            recipients=list(config.to),
            sender=self._sender,
            subject=format_subject(config.subject, batch.size),
            body_text=body,
            headers={
                "X-SinkRelay-Batch-Id": batch.id,
                "X-SinkRelay-Destination-Key": batch.destination_key,
            },
        )

    async def deliver(self, batch: Batch) -> None:
        payload = self.build_payload(batch)
        try:
            await asyncio.to_thread(self._mailer.send, payload)
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentDeliveryError(f"Recipients refused: {exc.recipients}") from exc
        except smtplib.SMTPResponseException as exc:
            detail = f"SMTP {exc.smtp_code}: {exc.smtp_error!r}"
            if 500 <= exc.smtp_code < 600:
                raise PermanentDeliveryError(detail) from exc
            raise TransientDeliveryError(detail) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientDeliveryError(f"SMTP delivery failed: {exc}") from exc

        logger.info(
            "EmailSink: sent %r to %d recipient(s) (%d record(s))",
            payload.subject,
            len(payload.recipients),
            batch.size,
        )
