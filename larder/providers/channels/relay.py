from __future__ import annotations

import time

import httpx

from larder.core.config import Settings, get_settings
from larder.core.errors import ChannelConfigError, DeliveryError
from larder.domain.messages import ChannelKind, EmailPayload, NotificationMessage
from larder.services.telemetry import record_external_call


class RelayEmailChannel:
    """Forward rendered emails to a remote email service's /email/send endpoint."""

    kind = ChannelKind.EMAIL

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        if not self._settings.email_relay_url:
            raise ChannelConfigError("EMAIL_RELAY_URL is required for the relay email channel")
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per channel for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def send(self, message: NotificationMessage) -> None:
        payload = message.payload
        if not isinstance(payload, EmailPayload):
            raise DeliveryError("relay channel only sends email payloads")
        headers = {"Content-Type": "application/json"}
        if self._settings.email_relay_api_key:
            headers["X-Api-Key"] = self._settings.email_relay_api_key
        url = self._settings.email_relay_url.rstrip("/") + "/email/send"
        body = {
            "to": message.recipient,
            "subject": payload.subject,
            "html_body": payload.html_body,
            "text_body": payload.text_body,
        }
        start = time.monotonic()
        success = False
        try:
            response = await self._get_client().post(url, json=body, headers=headers)
            if response.status_code >= 400:
                raise DeliveryError(f"email relay returned {response.status_code}")
            success = True
        except httpx.HTTPError as exc:
            raise DeliveryError(f"email relay request failed: {type(exc).__name__}") from exc
        finally:
            record_external_call(
                integration="email.relay",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
