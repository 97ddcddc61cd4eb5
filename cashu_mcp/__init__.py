"""Cashu MCP - Cashu ecash wallet exposed as MCP tools.

Wallet orchestration over a local SQLite store, with mint, melt, send and
receive operations served to MCP clients over stdio.
"""

__version__ = "1.0.0"

from .config import ServerConfig, WalletConfig, load_config
from .manager import Manager
from .orchestrator import WalletOrchestrator
from .server import create_server, serve
from .types import ErrorCode, WalletApiError, WalletError

__all__ = [
    # Wallet facade and engine
    "WalletOrchestrator",
    "Manager",
    # Configuration
    "ServerConfig",
    "WalletConfig",
    "load_config",
    # Server
    "create_server",
    "serve",
    # Errors
    "ErrorCode",
    "WalletApiError",
    "WalletError",
]
