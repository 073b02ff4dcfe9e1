"""
Start the FairLens MCP server.

The FastAPI suitability endpoints are exposed as MCP tools over SSE.

Usage:
    python run_backend.py [port]
"""

import logging
import sys

from fairlens.config import configure_logging
from fairlens.mcp_server import mcp

logger = logging.getLogger("fairlens.server")


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    port = int(argv[0]) if argv else 8000
    configure_logging()
    logger.info("Starting FairLens MCP server on http://localhost:%d (Ctrl+C to stop)", port)
    mcp.run(transport="sse", port=port)


if __name__ == "__main__":
    main()
