# stocksync/core/logging_config.py
"""
Centralized logging configuration for the application.

Keeps the pipeline's own loggers at the configured level while quieting the
HTTP, database, broker and scheduler libraries.
"""

import logging
import os


def configure_logging():
    """
    Configure logging for the application.

    - App code: INFO (or DEBUG if LOG_LEVEL=DEBUG)
    - HTTP clients (httpx, httpcore): WARNING only
    - Database (sqlalchemy, asyncpg, alembic): WARNING only
    - Broker and scheduler (redis, apscheduler): WARNING only
    """
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, log_level, logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )

    for noisy in ("httpx", "httpcore", "sqlalchemy", "sqlalchemy.engine",
                  "asyncpg", "alembic", "redis", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    # Keep app loggers at configured level
    logging.getLogger("stocksync").setLevel(level)
    logging.getLogger("__main__").setLevel(level)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at level: {log_level}")
