from __future__ import annotations

import asyncio
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
import time

import aiosmtplib

from larder.core.config import Settings, get_settings
from larder.core.errors import ChannelConfigError, DeliveryError
from larder.domain.messages import ChannelKind, EmailPayload, NotificationMessage
from larder.services.telemetry import record_external_call


class SmtpEmailChannel:
    kind = ChannelKind.EMAIL

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        if not self._settings.smtp_host:
            raise ChannelConfigError("SMTP_HOST is required for the smtp email channel")
        if not self._settings.smtp_sender_email:
            raise ChannelConfigError("SMTP_SENDER_EMAIL is required for the smtp email channel")

    def build_message(self, message: NotificationMessage) -> EmailMessage:
        payload = message.payload
        if not isinstance(payload, EmailPayload):
            raise DeliveryError("smtp channel only sends email payloads")
        mime = EmailMessage()
        mime["From"] = formataddr((self._settings.smtp_sender_name, self._settings.smtp_sender_email))
        mime["To"] = message.recipient
        mime["Subject"] = payload.subject
        mime["Message-ID"] = make_msgid(idstring=message.message_id)
        # Plain text first so clients without HTML support still render something.
        mime.set_content(payload.text_body or "")
        if payload.html_body:
            mime.add_alternative(payload.html_body, subtype="html")
        return mime

    async def send(self, message: NotificationMessage) -> None:
        mime = self.build_message(message)
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        start = time.monotonic()
        success = False
        try:
            await asyncio.wait_for(
                aiosmtplib.send(
                    mime,
                    hostname=self._settings.smtp_host,
                    port=self._settings.smtp_port,
                    username=self._settings.smtp_username or None,
                    password=self._settings.smtp_password or None,
                    start_tls=self._settings.smtp_start_tls,
                    timeout=timeout_s,
                ),
                timeout=timeout_s,
            )
            success = True
        except asyncio.TimeoutError as exc:
            raise DeliveryError("smtp send timed out") from exc
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"smtp send failed: {type(exc).__name__}") from exc
        finally:
            record_external_call(
                integration="email.smtp",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )
