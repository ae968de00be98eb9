from __future__ import annotations

import logging

from larder.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure the root logger once per process; workers and the API share the format.
    global _configured
    settings = get_settings()
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    if not _configured:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
        _configured = True
    logging.getLogger().setLevel(level)
    # Per-request httpx logs drown out delivery outcomes.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiosmtplib").setLevel(logging.WARNING)
