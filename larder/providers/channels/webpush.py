from __future__ import annotations

import asyncio
import json
import time

from pywebpush import WebPushException, webpush

from larder.core.config import Settings, get_settings
from larder.core.errors import ChannelConfigError, DeliveryError, SubscriptionGoneError
from larder.domain.messages import ChannelKind, NotificationMessage, PushPayload
from larder.services.telemetry import record_external_call


# Push services answer 404/410 once a browser has dropped the subscription.
GONE_STATUS_CODES = frozenset({404, 410})


class WebPushChannel:
    kind = ChannelKind.PUSH

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        if not self._settings.vapid_private_key or not self._settings.vapid_subject:
            raise ChannelConfigError("VAPID_PRIVATE_KEY and VAPID_SUBJECT are required for web push")

    def _send_sync(self, message: NotificationMessage) -> None:
        payload = message.payload
        if not isinstance(payload, PushPayload):
            raise DeliveryError("web push channel only sends push payloads")
        if message.credentials is None:
            raise DeliveryError("push message is missing subscription keys")
        subscription_info = {
            "endpoint": message.recipient,
            "keys": {
                "p256dh": message.credentials.p256dh,
                "auth": message.credentials.auth,
            },
        }
        try:
            webpush(
                subscription_info=subscription_info,
                data=json.dumps(payload.as_json(), ensure_ascii=False),
                vapid_private_key=self._settings.vapid_private_key,
                vapid_claims={"sub": self._settings.vapid_subject},
                ttl=self._settings.webpush_ttl_s,
                timeout=self._settings.ext_call_timeout_ms / 1000.0,
            )
        except WebPushException as exc:
            response = getattr(exc, "response", None)
            if response is not None and response.status_code in GONE_STATUS_CODES:
                raise SubscriptionGoneError(message.recipient) from exc
            raise DeliveryError(f"web push failed: {exc}") from exc

    async def send(self, message: NotificationMessage) -> None:
        # pywebpush is blocking; keep the event loop free while it runs.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        start = time.monotonic()
        success = False
        try:
            await asyncio.wait_for(asyncio.to_thread(self._send_sync, message), timeout=timeout_s)
            success = True
        except asyncio.TimeoutError as exc:
            raise DeliveryError("web push timed out") from exc
        except DeliveryError:
            raise
        except Exception as exc:  # noqa: BLE001 - requests/crypto errors surface as delivery failures.
            raise DeliveryError(f"web push failed: {type(exc).__name__}") from exc
        finally:
            record_external_call(
                integration="push.webpush",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )
