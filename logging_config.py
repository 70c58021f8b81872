"""
Logging Configuration for MarketDesk
Console output plus rotating application and error logs under core/logs.

Development Mode: set DEV_MODE=true or the development_mode setting for verbose debug logging
"""
import logging
import logging.handlers
import sys
import os

from core.config import LOG_DIR

# Development mode flag (can be set via environment variable)
DEV_MODE = os.getenv('DEV_MODE', 'false').lower() in ('true', '1', 'yes')

MAX_LOG_BYTES = 10 * 1024 * 1024  # 10MB
LOG_BACKUPS = 5

NOISY_LOGGERS = (
    'urllib3', 'requests', 'httpx', 'yfinance', 'peewee', 'asyncio',
    'python_multipart', 'uvicorn', 'fastapi',
)


def _dev_mode_setting():
    """development_mode from the settings table, or None when the database is unavailable."""
    try:
        from core.database import db
        return db.get_setting('development_mode')
    except Exception as e:
        print(f"Could not read development_mode setting: {e}")
        return None


def setup_logging(level=logging.INFO, dev_mode=None):
    """
    Configure logging for the application

    Args:
        level: Logging level (default: INFO)
        dev_mode: Verbose DEBUG logging with file:line output (default: DEV_MODE env var,
                  overridden by the development_mode setting)
    """
    if dev_mode is None:
        dev_mode = DEV_MODE
        setting = _dev_mode_setting()
        if setting is not None:
            dev_mode = bool(setting) or DEV_MODE

    if dev_mode:
        level = logging.DEBUG
        print("DEVELOPMENT MODE ENABLED - Verbose debug logging active")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    dev_formatter = logging.Formatter(
        '%(asctime)s %(levelname)s %(name)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if dev_mode else logging.INFO)
    console_handler.setFormatter(dev_formatter if dev_mode else formatter)
    root_logger.addHandler(console_handler)

    # Everything, including provider debug output in dev mode
    app_handler = logging.handlers.RotatingFileHandler(
        LOG_DIR / "application.log", maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
    )
    app_handler.setLevel(logging.DEBUG)
    app_handler.setFormatter(dev_formatter if dev_mode else formatter)
    root_logger.addHandler(app_handler)

    error_handler = logging.handlers.RotatingFileHandler(
        LOG_DIR / "errors.log", maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    root_logger.addHandler(error_handler)

    # Suppress noisy third-party loggers (unless in dev mode)
    third_party_level = logging.DEBUG if dev_mode else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    if dev_mode:
        logging.info("Logging initialized in DEVELOPMENT MODE with DEBUG level")
    else:
        logging.info("Logging initialized")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


if __name__ == "__main__":
    setup_logging(level=logging.DEBUG)
    logger = get_logger(__name__)
    logger.debug("Debug message")
    logger.info("Info message")
    logger.warning("Warning message")
    logger.error("Error message")
    print(f"\nLog files written to: {LOG_DIR}")
