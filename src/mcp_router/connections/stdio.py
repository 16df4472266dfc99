"""MCP stdio sessions owned by dedicated background tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import anyio
from anyio.abc import ObjectReceiveStream
from loguru import logger
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from mcp_router.config import BackendDescriptor
from mcp_router.errors import BackendConnectionError, TransportTeardownError


class BackendSession(Protocol):
    """The subset of ``mcp.ClientSession`` the router relies on."""

    async def list_tools(self) -> Any: ...

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> Any: ...

    async def list_resources(self) -> Any: ...

    async def read_resource(self, uri: Any) -> Any: ...


class Transport(Protocol):
    @property
    def is_running(self) -> bool: ...

    async def aclose(self) -> None: ...


@dataclass(slots=True)
class Connection:
    """A live session to one backend. Calls on it are serialized by ``lock``."""

    backend_id: str
    session: BackendSession
    transport: Transport
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def close(self) -> None:
        await self.transport.aclose()


class _SessionInbox(ObjectReceiveStream[Any]):
    """Receive side handed to ``ClientSession``; reports when the session lets go.

    The session closes its read stream only after failing its pending requests
    with ``CONNECTION_CLOSED``, so ``on_close`` marks a fully drained session.
    """

    def __init__(self, inner: ObjectReceiveStream[Any], on_close: Callable[[], None]) -> None:
        self._inner = inner
        self._on_close = on_close

    async def receive(self) -> Any:
        return await self._inner.receive()

    async def aclose(self) -> None:
        try:
            await self._inner.aclose()
        finally:
            self._on_close()


class StdioTransport:
    """Runs ``stdio_client`` + ``ClientSession`` inside one owning task.

    The anyio cancel scopes inside the MCP client must be exited by the task
    that entered them. The owning task enters both contexts, hands out the
    initialized session and waits until ``aclose()`` is called or the backend
    closes its stdout. Exiting unwinds the session first, then the subprocess
    transport, after which ``is_running`` is false.
    """

    def __init__(self, params: StdioServerParameters, *, name: str) -> None:
        self._params = params
        self._name = name
        self._wake = asyncio.Event()
        self._stopping = False
        self._task: asyncio.Task[None] | None = None
        self._teardown_error: Exception | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> ClientSession:
        if self._task is not None:
            raise RuntimeError(f"Transport {self._name} already started")
        ready: asyncio.Future[ClientSession] = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(ready), name=f"mcp-stdio-{self._name}")
        return await ready

    async def aclose(self) -> None:
        if self._task is None:
            return
        self._stopping = True
        self._wake.set()
        await self._task
        if self._teardown_error is not None:
            raise TransportTeardownError(
                f"Failed to close transport for {self._name}: {self._teardown_error}"
            ) from self._teardown_error

    async def _run(self, ready: asyncio.Future[ClientSession]) -> None:
        try:
            async with stdio_client(self._params) as (read_stream, write_stream):
                relay_send, relay_receive = anyio.create_memory_object_stream(0)
                async with anyio.create_task_group() as relays:
                    relays.start_soon(self._relay, read_stream, relay_send)
                    inbox = _SessionInbox(relay_receive, self._wake.set)
                    async with ClientSession(inbox, write_stream) as session:
                        await session.initialize()
                        ready.set_result(session)
                        await self._wake.wait()
                    relays.cancel_scope.cancel()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                self._teardown_error = exc
        finally:
            if not ready.done():
                ready.set_exception(
                    ConnectionError(f"Transport {self._name} stopped during startup")
                )
        if self._stopping:
            logger.debug("Stdio transport {} exited", self._name)
        else:
            logger.warning("Backend {} closed its stdio stream", self._name)

    async def _relay(self, source: Any, sink: Any) -> None:
        """Forward backend messages until the backend closes stdout."""

        try:
            async with sink:
                async for message in source:
                    await sink.send(message)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("Session for {} stopped reading", self._name)


async def open_stdio_connection(descriptor: BackendDescriptor) -> Connection:
    """Spawn the backend process and complete the MCP handshake."""

    params = StdioServerParameters(
        command=descriptor.command,
        args=list(descriptor.args),
        env=descriptor.env,
    )
    transport = StdioTransport(params, name=descriptor.id)
    try:
        session = await transport.start()
    except Exception as exc:
        raise BackendConnectionError(descriptor.id, str(exc) or type(exc).__name__) from exc
    return Connection(backend_id=descriptor.id, session=session, transport=transport)
