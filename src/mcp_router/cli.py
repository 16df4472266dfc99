"""Command-line entry points: offline index build and the MCP stdio server.

Usage:
    mcp-router-index --config config.json
    mcp-router-stdio --config config.json
"""

from __future__ import annotations

import argparse
import asyncio
import os

from loguru import logger

from mcp_router.api.mcp_server import create_mcp_server
from mcp_router.config import load_config
from mcp_router.errors import RouterError
from mcp_router.log import setup_logging
from mcp_router.service import McpRouter


def _parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument(
        "--config",
        default=os.getenv("MCP_ROUTER_CONFIG", "config.json"),
        help="Router config file (default: $MCP_ROUTER_CONFIG or config.json)",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("MCP_ROUTER_LOG_LEVEL", "INFO"),
        help="Log level (default: INFO)",
    )
    return parser


def build_index(argv: list[str] | None = None) -> int:
    """Embed every configured backend and write the index artifacts."""

    args = _parser("Build the backend embedding index").parse_args(argv)
    setup_logging(args.log_level)
    try:
        config = load_config(args.config)
        router = McpRouter.from_config(config)
        vectors = asyncio.run(router.rebuild_index())
    except (RouterError, OSError, ValueError) as exc:
        logger.error("Index build failed: {}", exc)
        return 1

    logger.info(
        "Wrote {} vectors for {} backends to {} and {}",
        vectors,
        len(config.backends),
        config.index.index_path,
        config.index.metadata_path,
    )
    return 0


def serve_mcp(argv: list[str] | None = None) -> None:
    """Serve the router over MCP stdio."""

    args = _parser("Run the router as an MCP stdio server").parse_args(argv)
    setup_logging(args.log_level)
    router = McpRouter.from_config(load_config(args.config))
    create_mcp_server(router).run()


if __name__ == "__main__":
    raise SystemExit(build_index())
