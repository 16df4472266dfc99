"""Sequences search, arbitration, connection and execution for one request."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import aclosing, suppress
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from mcp_router.config import BackendDescriptor, PipelineConfig
from mcp_router.connections.manager import ConnectionManager
from mcp_router.errors import RouteFailedError
from mcp_router.index.vector_index import EmbeddingIndex
from mcp_router.obs.tracing import Timer, TraceBuilder, TraceStore
from mcp_router.routing.aggregator import aggregate_hits
from mcp_router.routing.arbiter import SelectionArbiter
from mcp_router.routing.synthesizer import ToolCallSynthesizer
from mcp_router.types import (
    NO_TOOL,
    PipelineState,
    ProgressEvent,
    RouteResult,
    RoutingDecision,
    ToolInvocation,
    ToolResult,
)


class _ConsumerGone(Exception):
    """The event consumer stopped draining; stop producing."""


class _EventChannel:
    """Bounded, ordered event buffer between one producer and one consumer.

    Closing drains the buffer so a producer blocked on a full queue wakes up,
    and every later ``send`` reports the consumer as gone.
    """

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._sequence = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, kind: str, state: PipelineState, payload: dict[str, Any]) -> None:
        if self._closed:
            raise _ConsumerGone()
        event = ProgressEvent(kind=kind, state=state, sequence=self._sequence, payload=payload)
        self._sequence += 1
        await self._queue.put(event)

    async def receive(self) -> ProgressEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()


class RoutePipeline:
    """Request state machine.

    ``START -> SEARCHING -> ARBITRATING -> CONNECTING -> DISCOVERING_TOOLS ->
    SYNTHESIZING -> EXECUTING -> FORMATTING -> DONE``, with ``EXECUTING``
    skipped when no tool is chosen and ``ERROR`` reachable from any
    non-terminal state. Every transition emits exactly one event.

    Stages run in a producer task. If the consumer stops draining, the
    in-flight stage is allowed to finish but nothing further is emitted or
    executed. Connections are shared across requests and are never closed here.
    """

    def __init__(
        self,
        *,
        index: EmbeddingIndex,
        arbiter: SelectionArbiter,
        synthesizer: ToolCallSynthesizer,
        connections: ConnectionManager,
        backends: list[BackendDescriptor],
        config: PipelineConfig | None = None,
        trace_store: TraceStore | None = None,
    ) -> None:
        self.index = index
        self.arbiter = arbiter
        self.synthesizer = synthesizer
        self.connections = connections
        self.backends = list(backends)
        self.config = config or PipelineConfig()
        self.trace_store = trace_store
        self._producers: set[asyncio.Task[None]] = set()

    async def stream(
        self, query: str, context: str | None = None
    ) -> AsyncIterator[ProgressEvent]:
        """Yield the ordered progress events of one routed request."""

        channel = _EventChannel(self.config.event_buffer_size)
        producer = asyncio.create_task(self._produce(query, context, channel))
        self._producers.add(producer)
        producer.add_done_callback(self._producers.discard)
        try:
            while True:
                event = await channel.receive()
                yield event
                if event.is_terminal:
                    return
        finally:
            channel.close()

    async def run(self, query: str, context: str | None = None) -> RouteResult:
        """Route a request and return its terminal result.

        Raises:
            RouteFailedError: carrying the failing stage and message.
        """

        async with aclosing(self.stream(query, context)) as events:
            async for event in events:
                if event.kind == "done":
                    return RouteResult(**event.payload)
                if event.kind == "error":
                    raise RouteFailedError(event.payload["stage"], event.payload["message"])
        raise RouteFailedError(PipelineState.ERROR.value, "Pipeline ended without a result")

    async def _produce(
        self, query: str, context: str | None, channel: _EventChannel
    ) -> None:
        trace = TraceBuilder(query=query)
        state = PipelineState.START
        try:
            await channel.send(
                "start",
                state,
                {"query": query, "timestamp": datetime.now(timezone.utc).isoformat()},
            )

            state = PipelineState.SEARCHING
            await channel.send(
                "status", state, {"message": "Searching for appropriate backend..."}
            )
            with Timer() as timer:
                hits = await self.index.search(query, self.config.search_top_k)
            trace.record_stage(state.value, timer.elapsed_ms)

            state = PipelineState.ARBITRATING
            await channel.send(
                "status", state, {"message": "Selecting best backend...", "hits": len(hits)}
            )
            with Timer() as timer:
                candidates = aggregate_hits(
                    hits, self.backends, max_snippets=self.config.max_snippets
                )
                decision = await self.arbiter.arbitrate(query, candidates, context)
            trace.record_stage(state.value, timer.elapsed_ms)
            trace.backend_id = decision.backend.id
            trace.confidence = decision.confidence
            trace.fallback = decision.fallback

            state = PipelineState.CONNECTING
            backend = decision.backend
            await channel.send(
                "source_selected",
                state,
                {
                    "message": f"Connecting to {backend.name}...",
                    "source": {
                        "id": backend.id,
                        "name": backend.name,
                        "reasoning": decision.reasoning,
                        "confidence": decision.confidence,
                        "fallback": decision.fallback,
                    },
                },
            )
            with Timer() as timer:
                await self.connections.connect(backend)
            trace.record_stage(state.value, timer.elapsed_ms)

            state = PipelineState.DISCOVERING_TOOLS
            await channel.send(
                "status", state, {"message": f"Discovering tools on {backend.name}..."}
            )
            with Timer() as timer:
                tools = await self.connections.list_tools(backend.id)
            trace.record_stage(state.value, timer.elapsed_ms)

            state = PipelineState.SYNTHESIZING
            await channel.send(
                "status", state, {"message": "Generating tool call...", "tools": len(tools)}
            )
            with Timer() as timer:
                invocation = await self.synthesizer.synthesize(query, backend, tools)
            trace.record_stage(state.value, timer.elapsed_ms)
            trace.tool_name = invocation.tool_name or NO_TOOL

            tool_result: ToolResult | None = None
            if not invocation.is_noop:
                state = PipelineState.EXECUTING
                await channel.send(
                    "status",
                    state,
                    {
                        "message": f"Executing {invocation.tool_name}...",
                        "tool": invocation.tool_name,
                    },
                )
                with Timer() as timer:
                    tool_result = await self.connections.invoke(
                        backend.id, invocation.tool_name, invocation.arguments
                    )
                trace.record_stage(state.value, timer.elapsed_ms)

            state = PipelineState.FORMATTING
            content = format_response(decision, invocation, tool_result)
            await channel.send("content", state, {"content": content})

            result = RouteResult(
                backend_id=backend.id,
                backend_name=backend.name,
                reasoning=decision.reasoning,
                confidence=decision.confidence,
                tool_name=invocation.tool_name or NO_TOOL,
                tool_arguments=invocation.arguments,
                result=tool_result.to_dict() if tool_result is not None else None,
                content=content,
                fallback=decision.fallback,
            )
            state = PipelineState.DONE
            await channel.send("done", state, result.to_dict())
            self._record(trace)
        except _ConsumerGone:
            logger.info("Consumer stopped draining during {}; request abandoned", state.value)
            self._record(trace, error_stage=state.value, error_message="consumer disconnected")
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.opt(exception=exc).error("Route failed during {}: {}", state.value, message)
            self._record(trace, error_stage=state.value, error_message=message)
            with suppress(_ConsumerGone):
                await channel.send(
                    "error", PipelineState.ERROR, {"stage": state.value, "message": message}
                )

    def _record(
        self,
        trace: TraceBuilder,
        *,
        error_stage: str | None = None,
        error_message: str | None = None,
    ) -> None:
        if self.trace_store is not None:
            self.trace_store.create_record(
                trace, error_stage=error_stage, error_message=error_message
            )


def format_response(
    decision: RoutingDecision,
    invocation: ToolInvocation,
    result: ToolResult | None,
) -> str:
    """Render a routed result as markdown for chat clients."""

    lines = [
        f"I've routed your request to the **{decision.backend.name}**.",
        "",
        f"**Why this backend?** {decision.reasoning}",
        "",
    ]
    if invocation.is_noop:
        lines.append("No specific tool was needed for this query.")
        return "\n".join(lines)

    lines.extend([f"**Tool used:** {invocation.tool_name}", ""])
    if result is not None:
        lines.append("**Tool reported an error:**" if result.is_error else "**Result:**")
        lines.append(_render_content(result.content))
    return "\n".join(lines)


def _render_content(content: list[Any]) -> str:
    texts = [
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and "text" in block
    ]
    if content and len(texts) == len(content):
        return "\n".join(texts)
    return "```json\n" + json.dumps(content, indent=2, default=str) + "\n```"
