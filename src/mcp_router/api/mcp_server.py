"""The router exposed as an MCP server, so MCP clients can route through it."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from loguru import logger
from mcp.server.fastmcp import FastMCP

from mcp_router.config import BackendDescriptor
from mcp_router.routing.aggregator import aggregate_hits
from mcp_router.service import McpRouter


def _backend_document(backend: BackendDescriptor) -> Callable[[], str]:
    def read() -> str:
        return backend.model_dump_json(indent=2, exclude={"env"})

    return read


def create_mcp_server(router: McpRouter) -> FastMCP:
    """Build a FastMCP server with routing tools and one resource per backend.

    The server lifespan initializes the router and shuts it down again, so
    backend connections opened through it close with the client session.
    """

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[None]:
        await router.initialize()
        try:
            yield
        finally:
            await router.shutdown()

    server = FastMCP("mcp-router", lifespan=lifespan)

    @server.tool()
    async def route_query(query: str, context: str | None = None) -> dict[str, Any]:
        """Route a natural-language query to the best backend and run the chosen tool."""

        result = await router.route(query, context)
        return result.to_dict()

    @server.tool()
    async def execute_on_server(
        server_id: str, tool_name: str, arguments: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Run one tool on a named backend server."""

        result = await router.execute_on_backend(server_id, tool_name, arguments or {})
        return {"server_id": server_id, "tool_name": tool_name, "result": result.to_dict()}

    @server.tool()
    def list_servers() -> dict[str, Any]:
        """List the configured backend servers and whether each is connected."""

        return {"servers": router.list_backends()}

    @server.tool()
    async def search_servers(query: str, top_k: int = 5) -> dict[str, Any]:
        """Rank backend servers by similarity to the query without running anything."""

        hits = await router.search(query, top_k)
        return {
            "results": [asdict(hit) for hit in hits],
            "servers": [
                {
                    "server_id": candidate.backend_id,
                    "server_name": candidate.backend_name,
                    "score": candidate.score,
                    "matches": candidate.snippets,
                }
                for candidate in aggregate_hits(hits, router.config.backends)
            ],
        }

    for backend in router.config.backends:
        server.resource(
            f"server://{backend.id}",
            name=backend.name,
            description=backend.description,
            mime_type="application/json",
        )(_backend_document(backend))

    logger.debug("MCP server exposes {} backend resources", len(router.config.backends))
    return server
