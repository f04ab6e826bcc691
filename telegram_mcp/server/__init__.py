"""
MCP tool server for the Telegram bridge.
"""

from telegram_mcp.server.mcp_server import TelegramMCPServer

__all__ = ["TelegramMCPServer"]
