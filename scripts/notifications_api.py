from __future__ import annotations

import uvicorn

from larder.apps.notifications.app import create_app
from larder.core.config import get_settings


def main() -> None:
    # Serve the trigger API; its lifespan also runs the workers and schedulers.
    settings = get_settings()
    app = create_app(settings=settings)
    uvicorn.run(app, host=settings.notifications_api_host, port=settings.notifications_api_port)


if __name__ == "__main__":
    main()
