"""Router facade exposed to the HTTP boundary."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from loguru import logger

from mcp_router.config import RouterConfig
from mcp_router.connections.manager import ConnectionManager
from mcp_router.errors import BackendNotFoundError
from mcp_router.index.embedder import Embedder
from mcp_router.index.vector_index import EmbeddingIndex
from mcp_router.llm import create_chat_model, create_embedder
from mcp_router.obs.tracing import TraceStore
from mcp_router.pipeline.orchestrator import RoutePipeline
from mcp_router.routing.arbiter import SelectionArbiter
from mcp_router.routing.synthesizer import ToolCallSynthesizer
from mcp_router.types import (
    ProgressEvent,
    ResourceDescriptor,
    RouteResult,
    SearchHit,
    ToolResult,
)


class McpRouter:
    """Owns one index, one connection registry and one pipeline.

    Collaborators are injectable so independent routers can coexist (tests
    build several with fake engines and connectors).
    """

    def __init__(
        self,
        config: RouterConfig,
        *,
        embedder: Embedder | None = None,
        arbitration_llm: Any | None = None,
        synthesis_llm: Any | None = None,
        connections: ConnectionManager | None = None,
        trace_store: TraceStore | None = None,
    ) -> None:
        self.config = config
        self.index = EmbeddingIndex(
            embedder or create_embedder(config.reasoning, config.index), config.index
        )
        self.connections = connections or ConnectionManager()
        self.trace_store = trace_store or TraceStore()
        self.arbiter = SelectionArbiter(arbitration_llm, config.backends)
        self.synthesizer = ToolCallSynthesizer(synthesis_llm)
        self.pipeline = RoutePipeline(
            index=self.index,
            arbiter=self.arbiter,
            synthesizer=self.synthesizer,
            connections=self.connections,
            backends=config.backends,
            config=config.pipeline,
            trace_store=self.trace_store,
        )

    @classmethod
    def from_config(cls, config: RouterConfig) -> "McpRouter":
        """Wire OpenAI-backed engines, falling back to deterministic ones."""

        return cls(
            config,
            arbitration_llm=create_chat_model(
                config.reasoning, temperature=config.reasoning.arbitration_temperature
            ),
            synthesis_llm=create_chat_model(
                config.reasoning, temperature=config.reasoning.synthesis_temperature
            ),
        )

    @property
    def reasoning_configured(self) -> bool:
        return self.arbiter.llm is not None

    async def initialize(self) -> None:
        await self.index.initialize(self.config.backends)
        logger.info("Router initialized with {} backends", len(self.config.backends))

    async def rebuild_index(self) -> int:
        await self.index.rebuild(self.config.backends)
        return self.index.size

    async def search(self, query: str, top_k: int = 5) -> list[SearchHit]:
        return await self.index.search(query, top_k)

    async def route(self, query: str, context: str | None = None) -> RouteResult:
        return await self.pipeline.run(query, context)

    def route_events(
        self, query: str, context: str | None = None
    ) -> AsyncIterator[ProgressEvent]:
        return self.pipeline.stream(query, context)

    def list_backends(self) -> list[dict[str, Any]]:
        return [
            {
                "id": backend.id,
                "name": backend.name,
                "description": backend.description,
                "capabilities": list(backend.capabilities),
                "connected": self.connections.is_connected(backend.id),
            }
            for backend in self.config.backends
        ]

    async def execute_on_backend(
        self, backend_id: str, tool_name: str, arguments: dict[str, Any]
    ) -> ToolResult:
        """Call a tool directly, connecting to the backend first if needed."""

        await self._ensure_connected(backend_id)
        return await self.connections.invoke(backend_id, tool_name, arguments)

    async def list_backend_resources(self, backend_id: str) -> list[ResourceDescriptor]:
        await self._ensure_connected(backend_id)
        return await self.connections.list_resources(backend_id)

    async def read_backend_resource(self, backend_id: str, uri: str) -> list[Any]:
        await self._ensure_connected(backend_id)
        return await self.connections.read_resource(backend_id, uri)

    async def shutdown(self) -> None:
        await self.connections.disconnect_all()
        logger.info("Router shut down")

    async def _ensure_connected(self, backend_id: str) -> None:
        backend = self.config.get_backend(backend_id)
        if backend is None:
            raise BackendNotFoundError(backend_id)
        await self.connections.connect(backend)
