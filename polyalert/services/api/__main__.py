"""``python -m polyalert.services.api``: serve the alert API and its runners under uvicorn."""

import uvicorn

from polyalert.core.config import get_settings
from polyalert.core.logging import configure_logging


def main() -> int:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, service="api")
    # log_config=None keeps uvicorn on the JSON root handler.
    uvicorn.run(
        "polyalert.services.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
        log_level=settings.LOG_LEVEL.lower(),
        # One process: runners live in the app's event loop.
        workers=1,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
