"""
Logging configuration for Telegram bot.

Every component logs through the "telegram_bot" logger or one of its
children (telegram_bot.sessions, telegram_bot.roles, ...).
"""

import logging
import sys
from typing import Optional

from app.config import get_settings

# httpx logs full request URLs at INFO, and Bot API URLs contain the token
QUIET_LOGGERS = ("httpx", "httpcore", "telegram", "apscheduler")


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a stdout handler to the "telegram_bot" logger."""
    level = (level or get_settings().log_level).upper()

    logger = logging.getLogger("telegram_bot")
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        '[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(handler)

    # Keep bot output out of uvicorn's root handlers
    logger.propagate = False

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


# Global logger instance
bot_logger = setup_logging()
