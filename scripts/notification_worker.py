from __future__ import annotations

import asyncio
import signal

from larder.core.logging import configure_logging
from larder.services.runtime import NotificationRuntime


async def _main() -> None:
    # Run delivery workers and scan schedulers headless; SIGTERM/SIGINT trigger a graceful stop.
    configure_logging()
    runtime = NotificationRuntime()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, runtime.shutdown_event.set)
    await runtime.run_until_stopped()


if __name__ == "__main__":
    asyncio.run(_main())
