"""
MCP server for encrypted test device fixtures.
"""
import logging
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.types import Tool, TextContent

from .fixture_tools import get_device_fixture_tools, handle_device_fixture_tool

# Configure logging - log to both file and stderr
# File logging allows tailing progress: tail -f /tmp/devfixture-mcp.log
log_file = Path("/tmp/devfixture-mcp.log")
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(log_file, mode='a'),  # Append mode
        logging.StreamHandler()  # stderr - may show in MCP client
    ]
)
logger = logging.getLogger(__name__)
logger.info("=" * 80)
logger.info("devfixture-mcp server starting")
logger.info(f"Log file: {log_file}")
logger.info(f"Tip: Monitor progress with: tail -f {log_file}")
logger.info("=" * 80)

# Initialize server
app = Server("devfixture-mcp")


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available device fixture tools."""
    return get_device_fixture_tools()


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls."""
    if name.startswith("device_fixture_"):
        return await handle_device_fixture_tool(name, arguments or {})

    logger.error(f"Unknown tool requested: {name}")
    return [TextContent(type="text", text=f"Error: Unknown tool: {name}")]


def main():
    """Main entry point for the MCP server."""
    import asyncio
    import mcp.server.stdio

    async def run():
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                app.create_initialization_options()
            )

    asyncio.run(run())


if __name__ == "__main__":
    main()
