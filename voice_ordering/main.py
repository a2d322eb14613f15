"""Entry point: ``python -m voice_ordering.main`` or the ``voice-ordering`` script."""

import os

import uvicorn

from .api.app import create_app
from .config import load_config, validate_config
from .logging_config import configure_logging, get_logger

logger = get_logger(__name__)


def main() -> None:
    config = load_config()
    configure_logging(log_level=str(config.logging.level or "info").upper())

    errors, warnings = validate_config(config)
    if errors:
        logger.error("Configuration validation failed", errors=errors, warnings=warnings)
        raise RuntimeError(f"Configuration errors: {errors}")
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)

    host = os.getenv("UVICORN_HOST", "0.0.0.0")
    port = int(os.getenv("UVICORN_PORT", "8080"))
    logger.info("Starting voice ordering API", host=host, port=port, menu_items=len(config.menu))
    # log_config=None keeps uvicorn on the structlog handlers installed above
    uvicorn.run(create_app(config), host=host, port=port, log_config=None, ws="websockets")


if __name__ == "__main__":
    main()
