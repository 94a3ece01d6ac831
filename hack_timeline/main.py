"""
Hack Timeline entry point
"""

import logging
import uvicorn

from hack_timeline.config.settings import settings

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
)


def main():
    uvicorn.run(
        "hack_timeline.api.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.env == "development",
        log_level="info",
    )


if __name__ == "__main__":
    main()
