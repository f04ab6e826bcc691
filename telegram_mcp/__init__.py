"""
Telegram MCP

Bridges a long-lived Telegram connection with an MCP tool server. The MCP
side submits authentication codes and runs read-only queries; the Telegram
side keeps the connection authorized and rebuilds it after failures.

Usage:
    python -m telegram_mcp
"""

__version__ = "1.0.0"
