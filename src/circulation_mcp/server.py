"""Library Circulation MCP Server - FastMCP Implementation

Exposes the circulation desk to MCP clients over stdio or streamable HTTP.

Features exposed:
- Tools: borrow, return, renew, report lost, reservations, fine settlement, copies
- Resources: scan lookup, renewal eligibility, queues, overdue loans, fines, stats
"""

import logging
import signal
import sys
from typing import Any

from fastmcp import FastMCP

from .config import get_config
from .database.session import get_db_manager
from .observability import initialize_observability
from .observability.middleware import MCPInstrumentationMiddleware
from .resources import all_resources
from .tools import all_tools

# Initialize logging - stderr for logs, stdout for MCP protocol
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)

logger = logging.getLogger(__name__)

config = get_config()

initialize_observability()

mcp = FastMCP(
    name=config.server_name,
    version=config.server_version,
    instructions=(
        "Library Circulation MCP Server - lends, returns and renews barcoded copies, "
        "keeps a FIFO reservation queue per title with timed pickup holds, and "
        "assesses and settles overdue fines. Read a scan with library://copies/scan/{barcode} "
        "before choosing a tool."
    ),
)

mcp.add_middleware(MCPInstrumentationMiddleware())

# Register all resources with the MCP server
for resource in all_resources:
    uri = resource.get("uri_template", resource.get("uri"))
    if not uri:
        logger.error("Resource missing URI: %s", resource)
        continue

    logger.debug("Registering resource: %s with URI: %s", resource["name"], uri)
    try:
        mcp.resource(
            uri=uri,
            name=resource["name"],
            description=resource["description"],
            mime_type=resource["mime_type"],
        )(resource["handler"])
    except Exception:
        logger.exception("Failed to register resource %s", resource["name"])
        raise

logger.info("Registered %d resources", len(all_resources))

# Register all tools with the MCP server
for tool in all_tools:
    logger.debug("Registering tool: %s", tool["name"])
    try:
        mcp.tool(
            name=tool["name"],
            description=tool["description"],
        )(tool["handler"])
    except Exception:
        logger.exception("Failed to register tool %s", tool["name"])
        raise

logger.info("Registered %d tools", len(all_tools))


def prepare_database() -> None:
    """Create missing tables and fail fast if the database is unreachable."""
    db_manager = get_db_manager()
    db_manager.init_database()
    if not db_manager.verify_connection():
        raise RuntimeError(f"Cannot connect to database at {config.get_database_url()}")


def _install_signal_handlers() -> None:
    def signal_handler(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, initiating shutdown...", signum)
        get_db_manager().close()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def run_stdio_server() -> None:
    """Run the MCP server using stdio transport.

    Stdin receives JSON-RPC requests, stdout sends responses.
    """
    logger.info("Starting %s v%s on stdio transport", config.server_name, config.server_version)
    _install_signal_handlers()

    try:
        logger.info("MCP Server ready and waiting for connections...")
        mcp.run(transport="stdio")
    except Exception:
        logger.exception("Fatal error in MCP server")
        sys.exit(1)


def run_http_server() -> None:
    """Run the MCP server on streamable HTTP for terminals on the network."""
    logger.info(
        "Starting %s v%s on http://%s:%d",
        config.server_name,
        config.server_version,
        config.http_host,
        config.http_port,
    )
    _install_signal_handlers()

    try:
        mcp.run(transport="streamable-http", host=config.http_host, port=config.http_port)
    except Exception:
        logger.exception("Fatal error in MCP server")
        sys.exit(1)


def main() -> None:
    """Main entry point for the MCP server."""
    try:
        logger.info("=" * 60)
        logger.info("Library Circulation MCP Server")
        logger.info("Version: %s", config.server_version)
        logger.info("Transport: %s", config.transport)
        logger.info("Debug Mode: %s", config.debug)
        logger.info("=" * 60)

        if config.debug:
            logging.getLogger().setLevel(logging.DEBUG)
            logger.debug("Debug mode enabled - verbose protocol logging active")
        else:
            logging.getLogger().setLevel(config.log_level)
            logging.getLogger("fastmcp").setLevel(logging.WARNING)

        prepare_database()

        if config.transport == "stdio":
            run_stdio_server()
        else:
            run_http_server()

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception:
        logger.exception("Failed to start MCP server")
        sys.exit(1)


if __name__ == "__main__":
    main()
