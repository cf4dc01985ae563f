from __future__ import annotations

import uvicorn
from loguru import logger

from .api import create_app
from .logging_config import configure_logging
from .services import Services
from .settings import settings


def run_service() -> None:
    configure_logging(settings.log_level, settings.log_file)
    services = Services().initialize()
    app = create_app(services)

    logger.info("Flow pressure service listening on {}:{}", settings.api_host, settings.api_port)
    logger.info("Press Ctrl+C to stop")
    try:
        uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")


if __name__ == "__main__":
    run_service()
