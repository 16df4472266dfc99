"""Registry of live backend connections shared across requests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import anyio
from loguru import logger
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED
from pydantic import AnyUrl

from mcp_router.config import BackendDescriptor
from mcp_router.connections.stdio import Connection, open_stdio_connection
from mcp_router.errors import (
    BackendConnectionError,
    NotConnectedError,
    ResourceReadError,
    ToolExecutionError,
    TransportTeardownError,
)
from mcp_router.types import ResourceDescriptor, ToolDescriptor, ToolResult

Connector = Callable[[BackendDescriptor], Awaitable[Connection]]

_TRANSPORT_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


class ConnectionManager:
    """Owns at most one live connection per backend id.

    ``connect`` is single-flight per id: concurrent callers share one in-flight
    connect task and receive the same ``Connection``. A connection whose
    transport has stopped (the backend process exited) is evicted the next time
    it is touched, and ``connect`` then opens a fresh one.
    """

    def __init__(self, connector: Connector | None = None) -> None:
        self._connector = connector or open_stdio_connection
        self._connections: dict[str, Connection] = {}
        self._pending: dict[str, asyncio.Task[Connection]] = {}

    def is_connected(self, backend_id: str) -> bool:
        connection = self._connections.get(backend_id)
        return connection is not None and connection.transport.is_running

    def connected_ids(self) -> list[str]:
        return [backend_id for backend_id in self._connections if self.is_connected(backend_id)]

    async def connect(self, descriptor: BackendDescriptor) -> Connection:
        existing = self._connections.get(descriptor.id)
        if existing is not None:
            if existing.transport.is_running:
                return existing
            logger.warning("Backend {} connection lost, reconnecting", descriptor.id)
            await self._evict(descriptor.id, existing)

        pending = self._pending.get(descriptor.id)
        if pending is None:
            pending = asyncio.create_task(
                self._open(descriptor), name=f"connect-{descriptor.id}"
            )
            self._pending[descriptor.id] = pending
        # A cancelled caller must not cancel the connect other callers share.
        return await asyncio.shield(pending)

    async def list_tools(self, backend_id: str) -> list[ToolDescriptor]:
        connection = await self._require(backend_id)
        try:
            response = await connection.session.list_tools()
        except _TRANSPORT_ERRORS as exc:
            raise await self._lost(backend_id, connection, exc) from exc
        except McpError as exc:
            if exc.error.code == CONNECTION_CLOSED:
                raise await self._lost(backend_id, connection, exc) from exc
            raise
        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
            )
            for tool in response.tools
        ]

    async def invoke(
        self, backend_id: str, tool_name: str, arguments: dict[str, Any]
    ) -> ToolResult:
        """Call a tool; backend-side failures come back as ``is_error`` results.

        Raises:
            NotConnectedError: no connection is registered for ``backend_id``.
            BackendConnectionError: the transport is gone; the entry is evicted.
        """

        connection = await self._require(backend_id)
        async with connection.lock:
            try:
                response = await connection.session.call_tool(tool_name, arguments=arguments)
            except _TRANSPORT_ERRORS as exc:
                raise await self._lost(backend_id, connection, exc) from exc
            except McpError as exc:
                failure = ToolExecutionError(backend_id, tool_name, str(exc))
                logger.warning("{}", failure)
                if exc.error.code == CONNECTION_CLOSED:
                    await self._evict(backend_id, connection)
                return ToolResult(content=[{"type": "text", "text": str(failure)}], is_error=True)

        if response.isError:
            logger.info("Backend {} reported an error from tool {}", backend_id, tool_name)
        return ToolResult(
            content=[_dump_block(block) for block in response.content],
            is_error=bool(response.isError),
            structured_content=getattr(response, "structuredContent", None),
        )

    async def list_resources(self, backend_id: str) -> list[ResourceDescriptor]:
        connection = await self._require(backend_id)
        try:
            response = await connection.session.list_resources()
        except _TRANSPORT_ERRORS as exc:
            raise await self._lost(backend_id, connection, exc) from exc
        return [
            ResourceDescriptor(
                uri=str(resource.uri),
                name=resource.name,
                description=resource.description or "",
                mime_type=resource.mimeType,
            )
            for resource in response.resources
        ]

    async def read_resource(self, backend_id: str, uri: str) -> list[Any]:
        """Read one backend resource and return its raw content blocks."""

        connection = await self._require(backend_id)
        try:
            response = await connection.session.read_resource(AnyUrl(uri))
        except _TRANSPORT_ERRORS as exc:
            raise await self._lost(backend_id, connection, exc) from exc
        except McpError as exc:
            if exc.error.code == CONNECTION_CLOSED:
                raise await self._lost(backend_id, connection, exc) from exc
            raise ResourceReadError(backend_id, uri, str(exc)) from exc
        return [_dump_block(block) for block in response.contents]

    async def disconnect(self, backend_id: str) -> None:
        connection = self._connections.pop(backend_id, None)
        if connection is not None:
            await self._close(backend_id, connection)

    async def disconnect_all(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending.values(), return_exceptions=True)
        for backend_id in list(self._connections):
            await self.disconnect(backend_id)

    async def _require(self, backend_id: str) -> Connection:
        connection = self._connections.get(backend_id)
        if connection is None:
            raise NotConnectedError(backend_id)
        if not connection.transport.is_running:
            raise await self._lost(backend_id, connection, None)
        return connection

    async def _lost(
        self, backend_id: str, connection: Connection, exc: BaseException | None
    ) -> BackendConnectionError:
        reason = "connection lost" if exc is None else f"connection lost ({type(exc).__name__})"
        failure = BackendConnectionError(backend_id, reason)
        logger.warning("{}", failure)
        await self._evict(backend_id, connection)
        return failure

    async def _evict(self, backend_id: str, connection: Connection) -> None:
        if self._connections.get(backend_id) is connection:
            del self._connections[backend_id]
        await self._close(backend_id, connection)

    async def _close(self, backend_id: str, connection: Connection) -> None:
        try:
            await connection.close()
        except Exception as exc:
            failure = (
                exc
                if isinstance(exc, TransportTeardownError)
                else TransportTeardownError(f"Error disconnecting from {backend_id}: {exc}")
            )
            logger.warning("{}", failure)
            return
        logger.info("Disconnected from backend {}", backend_id)

    async def _open(self, descriptor: BackendDescriptor) -> Connection:
        try:
            connection = await self._connector(descriptor)
        except BackendConnectionError as exc:
            logger.error("{}", exc)
            raise
        except Exception as exc:
            logger.error("Failed to connect to backend {}: {}", descriptor.id, exc)
            raise BackendConnectionError(
                descriptor.id, str(exc) or type(exc).__name__
            ) from exc
        finally:
            self._pending.pop(descriptor.id, None)

        self._connections[descriptor.id] = connection
        logger.info("Connected to backend {} ({})", descriptor.name, descriptor.id)
        return connection


def _dump_block(block: Any) -> Any:
    if hasattr(block, "model_dump"):
        return block.model_dump(mode="json", exclude_none=True)
    return block
