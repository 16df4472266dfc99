"""FastAPI entrypoint for routing, search, execution and trace endpoints."""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from mcp_router.config import load_config
from mcp_router.errors import (
    BackendConnectionError,
    BackendNotFoundError,
    InitializationError,
    NotConnectedError,
    ResourceReadError,
    RouteFailedError,
)
from mcp_router.log import setup_logging
from mcp_router.routing.aggregator import aggregate_hits
from mcp_router.service import McpRouter


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    context: str | None = None


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=50)


class ExecuteRequest(BaseModel):
    backend_id: str = Field(min_length=1)
    tool_name: str = Field(min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


def _default_router() -> McpRouter:
    setup_logging(os.getenv("MCP_ROUTER_LOG_LEVEL", "INFO"))
    config = load_config(os.getenv("MCP_ROUTER_CONFIG", "config.json"))
    return McpRouter.from_config(config)


def create_app(router: McpRouter | None = None) -> FastAPI:
    """Build the HTTP app; without a router one is loaded from ``MCP_ROUTER_CONFIG``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = router or _default_router()
        await active.initialize()
        app.state.router = active
        try:
            yield
        finally:
            await active.shutdown()

    app = FastAPI(title="MCP Router", version="0.1.0", lifespan=lifespan)

    def _router(request: Request) -> McpRouter:
        return request.app.state.router

    @app.get("/health")
    def health(request: Request) -> dict[str, Any]:
        active = _router(request)
        return {
            "status": "ok",
            "reasoning_configured": active.reasoning_configured,
            "index_ready": active.index.is_ready,
            "index_size": active.index.size,
            "connected_backends": active.connections.connected_ids(),
        }

    @app.get("/api/servers")
    def list_servers(request: Request) -> dict[str, Any]:
        return {"servers": _router(request).list_backends()}

    @app.get("/api/servers/{backend_id}/resources")
    async def list_resources(backend_id: str, request: Request) -> dict[str, Any]:
        try:
            resources = await _router(request).list_backend_resources(backend_id)
        except BackendNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (BackendConnectionError, NotConnectedError) as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"backend_id": backend_id, "resources": [item.to_dict() for item in resources]}

    @app.get("/api/servers/{backend_id}/resource")
    async def read_resource(backend_id: str, uri: str, request: Request) -> dict[str, Any]:
        try:
            contents = await _router(request).read_backend_resource(backend_id, uri)
        except BackendNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ResourceReadError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (BackendConnectionError, NotConnectedError) as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"backend_id": backend_id, "uri": uri, "contents": contents}

    @app.post("/api/search")
    async def search(payload: SearchRequest, request: Request) -> dict[str, Any]:
        active = _router(request)
        try:
            hits = await active.search(payload.query, payload.top_k)
        except InitializationError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        candidates = aggregate_hits(hits, active.config.backends)
        return {
            "results": [asdict(hit) for hit in hits],
            "backends": [
                {
                    "backend_id": candidate.backend_id,
                    "backend_name": candidate.backend_name,
                    "score": candidate.score,
                    "matches": candidate.snippets,
                }
                for candidate in candidates
            ],
        }

    @app.post("/api/chat")
    async def chat(payload: ChatRequest, request: Request) -> StreamingResponse:
        active = _router(request)

        async def _event_source() -> AsyncIterator[str]:
            async with aclosing(active.route_events(payload.message, payload.context)) as events:
                async for event in events:
                    yield f"data: {json.dumps(event.to_dict(), default=str)}\n\n"

        return StreamingResponse(
            _event_source(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.post("/api/chat/simple")
    async def chat_simple(payload: ChatRequest, request: Request) -> dict[str, Any]:
        try:
            result = await _router(request).route(payload.message, payload.context)
        except RouteFailedError as exc:
            raise HTTPException(
                status_code=502, detail={"stage": exc.stage, "message": exc.message}
            ) from exc
        return result.to_dict()

    @app.post("/api/execute")
    async def execute(payload: ExecuteRequest, request: Request) -> dict[str, Any]:
        try:
            result = await _router(request).execute_on_backend(
                payload.backend_id, payload.tool_name, payload.arguments
            )
        except BackendNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except BackendConnectionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {
            "backend_id": payload.backend_id,
            "tool_name": payload.tool_name,
            "result": result.to_dict(),
        }

    @app.post("/api/index/rebuild")
    async def rebuild_index(request: Request) -> dict[str, Any]:
        try:
            vectors = await _router(request).rebuild_index()
        except InitializationError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"vectors": vectors}

    @app.get("/traces")
    def traces(request: Request, limit: int = 20) -> dict[str, Any]:
        records = _router(request).trace_store.list_recent(limit=limit)
        return {"items": [asdict(record) for record in records]}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str, request: Request) -> dict[str, Any]:
        try:
            record = _router(request).trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics(request: Request) -> dict[str, Any]:
        return _router(request).trace_store.summary()

    return app


app = create_app()


def serve() -> None:
    """Run the HTTP app with uvicorn (``mcp-router`` console script)."""

    import uvicorn

    uvicorn.run(
        "mcp_router.api.main:app",
        host=os.getenv("MCP_ROUTER_HOST", "127.0.0.1"),
        port=int(os.getenv("MCP_ROUTER_PORT", "3001")),
    )
