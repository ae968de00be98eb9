from __future__ import annotations

import time

from larder.core.errors import DeliveryError, SubscriptionGoneError
from larder.domain.messages import ChannelKind, NotificationMessage


class FakeChannel:
    """Record sends instead of delivering them.

    ``fail_first`` makes the next N sends raise DeliveryError; ``gone_recipients``
    makes sends to those recipients raise SubscriptionGoneError.
    """

    def __init__(
        self,
        kind: ChannelKind,
        *,
        fail_first: int = 0,
        fail_always: bool = False,
        gone_recipients: set[str] | None = None,
    ) -> None:
        self.kind = kind
        self.fail_first = fail_first
        self.fail_always = fail_always
        self.gone_recipients = set(gone_recipients or ())
        self.attempts: list[tuple[float, NotificationMessage]] = []
        self.sent: list[NotificationMessage] = []

    async def send(self, message: NotificationMessage) -> None:
        self.attempts.append((time.monotonic(), message))
        if message.recipient in self.gone_recipients:
            raise SubscriptionGoneError(message.recipient)
        if self.fail_always:
            raise DeliveryError("fake channel configured to fail")
        if self.fail_first > 0:
            self.fail_first -= 1
            raise DeliveryError("fake channel scripted failure")
        self.sent.append(message)
