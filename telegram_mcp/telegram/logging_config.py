"""
Telegram Bridge Logging Configuration

Sends everything under the 'telegram_mcp' logger to a rotating log file and
to the console.
"""

import logging
from logging.handlers import RotatingFileHandler

from telegram_mcp.config import LOG_DIR

LOGGER_NAME = "telegram_mcp"


def setup_telegram_logging(log_level: int = logging.INFO) -> logging.Logger:
    """
    Configure logging for the bridge.

    Args:
        log_level: Level of the logger and both handlers

    Returns:
        The configured 'telegram_mcp' logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    # Avoid adding handlers twice
    if logger.handlers:
        return logger

    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / "telegram_mcp.log"

    # Rotating file handler (10MB per file, keep 5)
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    # telethon is chatty at INFO
    logging.getLogger("telethon").setLevel(logging.WARNING)

    logger.info(f"Telegram MCP logging initialized: {log_file.absolute()}")
    return logger
