"""
Run the auction cache API server.

Usage:
    python run_api.py

Reads configuration from the environment / .env (see auction_cache.config).
"""

import os

import uvicorn

from auction_cache.api import create_api_app
from auction_cache.config import get_settings
from auction_cache.utils.logging import get_logger, setup_logging


def main():
    """Run the API server."""
    settings = get_settings()
    setup_logging(settings.log_level)
    logger = get_logger("run_api")

    app = create_api_app(settings)

    # Hosting platforms use PORT, fallback to API_PORT or 8000
    port = int(os.environ.get("PORT", os.environ.get("API_PORT", 8000)))
    host = os.environ.get("API_HOST", "0.0.0.0")

    logger.info("Starting auction cache API", host=host, port=port)

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
