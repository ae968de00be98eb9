from __future__ import annotations

from typing import Protocol

from larder.domain.messages import ChannelKind, NotificationMessage


class ChannelAdapter(Protocol):
    kind: ChannelKind

    async def send(self, message: NotificationMessage) -> None:
        """Deliver one message or raise DeliveryError."""
        ...
