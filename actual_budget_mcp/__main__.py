# actual_budget_mcp/__main__.py
"""
Run the MCP server over streamable HTTP.

    python -m actual_budget_mcp --enable-oauth --port 3000
"""

import argparse
import logging

import uvicorn

from actual_budget_mcp.config import get_settings
from actual_budget_mcp.server import create_app

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="actual-budget-mcp")
    parser.add_argument(
        "--enable-oauth",
        action="store_true",
        help="Require OAuth access tokens (overrides MCP_AUTH_MODE)",
    )
    parser.add_argument(
        "--enable-bearer",
        action="store_true",
        help="Require the static MCP_BEARER_TOKEN (overrides MCP_AUTH_MODE)",
    )
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=None, help="Defaults to MCP_PORT")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)

    settings = get_settings()
    if args.port is not None:
        settings = settings.model_copy(update={"mcp_port": args.port})

    app = create_app(
        settings,
        enable_oauth=args.enable_oauth,
        enable_bearer=args.enable_bearer,
    )

    logger.info(f"Starting Actual Budget MCP server on {args.host}:{settings.mcp_port}")
    uvicorn.run(app, host=args.host, port=settings.mcp_port)


if __name__ == "__main__":
    main()
