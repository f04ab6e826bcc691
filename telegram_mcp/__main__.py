#!/usr/bin/env python3
"""
Telegram MCP entry point

Usage:
    telegram-mcp
    python -m telegram_mcp --config telegram.yaml --log-level DEBUG

Configuration comes from the environment (PHONE, APP_ID, APP_HASH,
MCP_SERVER_PORT, ...) and an optional YAML file.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from telegram_mcp.errors import ConfigError
from telegram_mcp.server import TelegramMCPServer
from telegram_mcp.telegram import TelegramBridge
from telegram_mcp.telegram.config import TelegramConfig
from telegram_mcp.telegram.logging_config import setup_telegram_logging

logger = logging.getLogger("telegram_mcp.main")


async def serve(config: TelegramConfig) -> int:
    """
    Run the bridge and the MCP server until one of them stops.

    Args:
        config: Validated configuration

    Returns:
        Process exit status
    """
    fatal = asyncio.Event()
    bridge = TelegramBridge(config, on_fatal=lambda exc: fatal.set())
    server = TelegramMCPServer(bridge, bridge.dispatcher, config)

    await bridge.connect()
    server_task = asyncio.create_task(server.run())
    fatal_task = asyncio.create_task(fatal.wait())

    try:
        await asyncio.wait({server_task, fatal_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        server_error = await _finish(server_task)
        await _finish(fatal_task)
        await bridge.disconnect()

    if bridge.lifecycle.fatal_error is not None:
        logger.critical(f"Exiting after fatal error: {bridge.lifecycle.fatal_error}")
        return 1
    if server_error is not None:
        logger.critical(f"MCP server stopped with error: {server_error}")
        return 1

    logger.info("MCP server stopped")
    return 0


async def _finish(task: asyncio.Task) -> Optional[BaseException]:
    """Cancel a task if needed and return the exception it ended with."""
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        return None
    except Exception as e:
        return e
    return None


def main() -> None:
    parser = argparse.ArgumentParser(description="Telegram MCP server")
    parser.add_argument("--config", type=str, default=None, help="YAML config file (default: $TELEGRAM_MCP_CONFIG)")
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")
    args = parser.parse_args()

    setup_telegram_logging(getattr(logging, args.log_level))

    try:
        config = TelegramConfig.from_env(config_file=args.config)
    except ConfigError as e:
        logger.critical(str(e))
        sys.exit(1)

    try:
        sys.exit(asyncio.run(serve(config)))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
