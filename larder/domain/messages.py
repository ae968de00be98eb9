from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4


class ChannelKind(str, Enum):
    EMAIL = "email"
    PUSH = "push"


@dataclass(frozen=True)
class EmailPayload:
    subject: str
    html_body: str
    text_body: str


@dataclass(frozen=True)
class PushPayload:
    title: str
    body: str
    url: str = "/"
    action_title: str | None = None
    icon: str = "/apple-touch-icon-180x180.png"
    badge: str = "/favicon-32x32.png"

    def as_json(self) -> dict[str, str | None]:
        # Field names follow the service worker contract of the web app.
        return {
            "title": self.title,
            "body": self.body,
            "icon": self.icon,
            "badge": self.badge,
            "url": self.url,
            "actionTitle": self.action_title,
        }


@dataclass(frozen=True)
class PushCredentials:
    # Browser-issued keys for a single push subscription.
    p256dh: str
    auth: str
    subscription_id: int | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NotificationMessage:
    recipient: str
    channel: ChannelKind
    payload: EmailPayload | PushPayload
    kind: str = "adhoc"
    attempt: int = 0
    user_id: int | None = None
    credentials: PushCredentials | None = None
    created_at: datetime = field(default_factory=_utc_now)
    message_id: str = field(default_factory=lambda: uuid4().hex)

    def __post_init__(self) -> None:
        if self.attempt < 0:
            raise ValueError("attempt must be non-negative")
        if self.channel is ChannelKind.EMAIL and not isinstance(self.payload, EmailPayload):
            raise ValueError("email messages require an EmailPayload")
        if self.channel is ChannelKind.PUSH and not isinstance(self.payload, PushPayload):
            raise ValueError("push messages require a PushPayload")

    def with_attempt(self, attempt: int) -> NotificationMessage:
        # Retries keep identity and content; only the attempt counter moves.
        return replace(self, attempt=attempt)


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    delay: float
