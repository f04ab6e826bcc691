"""
Process-wide paths.
"""

import os
from pathlib import Path

LOG_DIR = Path(os.getenv("TELEGRAM_MCP_LOG_DIR", "logs"))

SESSION_DIR = Path(os.getenv("SESSION_DIR", "session"))
