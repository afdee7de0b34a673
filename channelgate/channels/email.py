"""SMTP email sender (STARTTLS, plain text with an HTML alternative)."""

from __future__ import annotations

import html
import logging
import uuid
from email.message import EmailMessage
from email.utils import make_msgid

import aiosmtplib

from channelgate import metrics
from channelgate.channels.base import OutboundMessage, SendResult

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "New message"


class EmailSender:
    channel = "email"

    def __init__(
        self,
        host: str | None,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        from_address: str | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from = from_address or username

    def build_message(self, message: OutboundMessage) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = message.subject or DEFAULT_SUBJECT
        msg["From"] = self._from or ""
        msg["To"] = message.recipient_id
        domain = (self._from or "channelgate.local").rsplit("@", 1)[-1]
        msg["Message-ID"] = make_msgid(idstring=uuid.uuid4().hex[:12], domain=domain)
        msg.set_content(message.content)
        body_html = "<br>".join(html.escape(line) for line in message.content.splitlines())
        msg.add_alternative(f"<html><body><p>{body_html}</p></body></html>", subtype="html")
        return msg

    async def send_message(self, tenant_id: str, message: OutboundMessage) -> SendResult:
        if not self._host or not self._from:
            metrics.CHANNEL_SENDS_TOTAL.labels(channel=self.channel, status="failed").inc()
            return SendResult.failed("email_not_configured")

        msg = self.build_message(message)
        smtp = aiosmtplib.SMTP(hostname=self._host, port=self._port, start_tls=False)
        try:
            await smtp.connect()
            await smtp.starttls()
            if self._username and self._password:
                await smtp.login(self._username, self._password)
            await smtp.send_message(msg)
            await smtp.quit()
        except aiosmtplib.SMTPException as exc:
            logger.warning("Email send failed for tenant %s: %s", tenant_id, exc)
            metrics.CHANNEL_SENDS_TOTAL.labels(channel=self.channel, status="failed").inc()
            return SendResult.failed(f"SMTP error: {exc}")
        finally:
            if smtp.is_connected:
                smtp.close()

        metrics.CHANNEL_SENDS_TOTAL.labels(channel=self.channel, status="sent").inc()
        return SendResult(status="sent", message_id=msg["Message-ID"])
