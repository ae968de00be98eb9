from __future__ import annotations


class LarderError(Exception):
    """Base error for larder."""


class ChannelConfigError(LarderError):
    """Missing or invalid channel adapter configuration."""


class DeliveryError(LarderError):
    """A channel adapter failed to deliver a message; retried by the worker."""


class SubscriptionGoneError(DeliveryError):
    """Push endpoint rejected the subscription as expired or unknown (404/410)."""

    def __init__(self, endpoint: str) -> None:
        super().__init__(f"push subscription gone: {endpoint}")
        self.endpoint = endpoint


class MarkerStoreError(LarderError):
    """Idempotency marker backend failure."""
