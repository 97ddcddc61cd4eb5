"""MCP server exposing the wallet tools over stdio."""

from __future__ import annotations

import logging
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .config import ServerConfig
from .orchestrator import WalletOrchestrator
from .tools import TOOLS, ToolContext, bind_tools
from .types import ErrorCode, ToolExecutionError

logger = logging.getLogger(__name__)


def create_server(context: ToolContext) -> Server:
    """Build an MCP server with every wallet tool bound to ``context``."""
    identity = context.config.server
    server: Server = Server(identity.name, version=identity.version, instructions=identity.description)
    handlers = bind_tools(context)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(
                name=tool.name,
                title=tool.title,
                description=tool.description,
                inputSchema=tool.input_schema(),
            )
            for tool in TOOLS
        ]

    # Arguments are validated by the tool's own parameter model
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: dict[str, Any]) -> Any:
        handler = handlers.get(name)
        if handler is None:
            raise ToolExecutionError(f"{ErrorCode.TOOL_EXECUTION_ERROR.value}: Unknown tool: {name}")

        logger.debug("Calling tool %s", name)
        result = await handler(arguments)
        content = [TextContent(type="text", text=result.text)]
        if result.structured is None:
            return content
        return content, result.structured

    return server


async def run_stdio(server: Server) -> None:
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


async def serve(config: ServerConfig, wallet: WalletOrchestrator | None = None) -> None:
    """Initialize the wallet, serve tools over stdio until the client leaves, clean up."""
    wallet = wallet or WalletOrchestrator(config.wallet)
    try:
        await wallet.initialize()
        if config.wallet.default_mint:
            await wallet.ensure_default_mint(config.wallet.default_mint)
        if config.transport.enabled:
            logger.warning(
                "Networked transport settings found (%d relays); serving over stdio only",
                len(config.transport.relays),
            )

        server = create_server(ToolContext(wallet=wallet, config=config))
        logger.info("%s v%s ready on stdio", config.server.name, config.server.version)
        await run_stdio(server)
    finally:
        await wallet.cleanup()
