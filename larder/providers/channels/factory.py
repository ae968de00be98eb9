from __future__ import annotations

from larder.core.config import Settings, get_settings
from larder.core.errors import ChannelConfigError
from larder.domain.messages import ChannelKind
from larder.providers.channels.base import ChannelAdapter
from larder.providers.channels.fake import FakeChannel
from larder.providers.channels.relay import RelayEmailChannel
from larder.providers.channels.smtp import SmtpEmailChannel
from larder.providers.channels.webpush import WebPushChannel


def get_email_channel(settings: Settings | None = None) -> ChannelAdapter:
    settings = settings or get_settings()
    name = (settings.email_channel or "smtp").lower()
    if name == "smtp":
        return SmtpEmailChannel(settings)
    if name == "relay":
        return RelayEmailChannel(settings)
    if name == "fake":
        return FakeChannel(ChannelKind.EMAIL)
    raise ChannelConfigError(f"Unsupported email channel: {name}")


def get_push_channel(settings: Settings | None = None) -> ChannelAdapter:
    settings = settings or get_settings()
    name = (settings.push_channel or "webpush").lower()
    if name == "webpush":
        return WebPushChannel(settings)
    if name == "fake":
        return FakeChannel(ChannelKind.PUSH)
    raise ChannelConfigError(f"Unsupported push channel: {name}")


def email_channel_configured(settings: Settings | None = None) -> bool:
    settings = settings or get_settings()
    name = (settings.email_channel or "smtp").lower()
    if name == "smtp":
        return bool(settings.smtp_host and settings.smtp_sender_email)
    if name == "relay":
        return bool(settings.email_relay_url)
    return name == "fake"


def push_channel_configured(settings: Settings | None = None) -> bool:
    settings = settings or get_settings()
    name = (settings.push_channel or "webpush").lower()
    if name == "webpush":
        # Browsers subscribe with the public key; sending needs the private key and subject.
        return bool(settings.vapid_public_key and settings.vapid_private_key and settings.vapid_subject)
    return name == "fake"
