#!/usr/bin/env python3
"""
Approval Portal Entry Point

Starts the FastAPI server with the settings from PORTAL_* environment variables.
"""

import sys

from approval_portal.api import run_server
from approval_portal.config import get_config
from approval_portal.logging_config import get_logger, setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger = get_logger("portal.run")

    logger.info(f"Starting approval portal on {config.api_host}:{config.api_port} "
                f"(database {config.database_url.split('://')[0]})")

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            workers=config.api_workers,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        logger.info("Shutting down approval portal")
    except Exception:
        logger.error("Error starting server", exc_info=True)
        sys.exit(1)
