"""
Serve the preference API with uvicorn: ``python -m prefstore``.
"""

from __future__ import annotations

import logging

import uvicorn
from pydantic import ValidationError

from prefstore.app import LOG_FORMAT, create_app
from prefstore.config import get_settings

logger = logging.getLogger("prefstore")


def main() -> int:
    try:
        settings = get_settings()
    except ValidationError as exc:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.error("Failed to load config: %s", exc)
        return 1

    app = create_app(settings)
    logger.info("Server starting on %s:%d", settings.server_host, settings.server_port)
    uvicorn.run(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_config=None,
    )
    logger.info("Server stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
