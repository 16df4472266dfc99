import asyncio
from contextlib import aclosing
from typing import Any

import pytest
from fakes import (
    BlockingChatModel,
    FakeConnector,
    ScriptedChatModel,
    build_router,
    default_sessions,
)

from mcp_router.errors import RouteFailedError
from mcp_router.routing.aggregator import aggregate_hits
from mcp_router.routing.arbiter import FALLBACK_REASONING
from mcp_router.types import PipelineState


class ExplodingChatModel:
    async def ainvoke(self, messages: list[Any]) -> Any:
        raise RuntimeError("reasoning engine unavailable")


async def _collect(router, query: str, context: str | None = None) -> list:
    async with aclosing(router.route_events(query, context)) as events:
        return [event async for event in events]


async def _wait_for_trace(router) -> None:
    for _ in range(200):
        if router.trace_store.list_recent():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("no trace recorded")


@pytest.mark.asyncio
async def test_routes_query_to_selected_backend_and_executes_tool(tmp_path) -> None:
    connector = FakeConnector(default_sessions())
    router = build_router(
        tmp_path,
        arbitration_llm=ScriptedChatModel(
            {"backendId": "calculator", "reasoning": "It is arithmetic.", "confidence": 0.9}
        ),
        synthesis_llm=ScriptedChatModel({"toolName": "add", "arguments": {"a": 2, "b": 3}}),
        connector=connector,
    )
    await router.initialize()

    events = await _collect(router, "add 2 and 3")

    assert [(event.kind, event.state) for event in events] == [
        ("start", PipelineState.START),
        ("status", PipelineState.SEARCHING),
        ("status", PipelineState.ARBITRATING),
        ("source_selected", PipelineState.CONNECTING),
        ("status", PipelineState.DISCOVERING_TOOLS),
        ("status", PipelineState.SYNTHESIZING),
        ("status", PipelineState.EXECUTING),
        ("content", PipelineState.FORMATTING),
        ("done", PipelineState.DONE),
    ]
    assert [event.sequence for event in events] == list(range(len(events)))
    assert events[3].payload["source"]["id"] == "calculator"

    done = events[-1].payload
    assert done["backend_id"] == "calculator"
    assert done["tool_name"] == "add"
    assert done["tool_arguments"] == {"a": 2, "b": 3}
    assert done["result"]["content"] == [{"type": "text", "text": "5"}]
    assert "**Calculator**" in done["content"]
    assert "5" in events[-2].payload["content"]
    assert connector.opened == ["calculator"]


@pytest.mark.asyncio
async def test_run_returns_result_and_records_trace(tmp_path) -> None:
    router = build_router(
        tmp_path,
        arbitration_llm=ScriptedChatModel({"backendId": "weather"}),
        synthesis_llm=ScriptedChatModel(
            {"toolName": "forecast", "arguments": {"city": "Oslo"}}
        ),
    )
    await router.initialize()

    result = await router.route("Will it rain in Oslo?", context="tomorrow")

    assert result.backend_id == "weather"
    assert result.confidence == 0.5
    assert result.result["content"][0]["text"] == "Sunny in Oslo"
    assert "Additional Context: tomorrow" in router.arbiter.llm.calls[0][1].content

    [trace] = router.trace_store.list_recent()
    assert trace.succeeded
    assert trace.backend_id == "weather"
    assert trace.tool_name == "forecast"
    assert {"searching", "arbitrating", "connecting", "executing"} <= set(trace.stage_latency_ms)


@pytest.mark.asyncio
async def test_no_tool_needed_skips_execution(tmp_path) -> None:
    router = build_router(
        tmp_path,
        arbitration_llm=ScriptedChatModel({"backendId": "calendar"}),
        synthesis_llm=ScriptedChatModel('{"toolName": null, "arguments": {}}'),
    )
    await router.initialize()

    events = await _collect(router, "what can the calendar do?")

    assert PipelineState.EXECUTING not in [event.state for event in events]
    done = events[-1].payload
    assert done["tool_name"] == "none"
    assert done["result"] is None
    assert "No specific tool was needed" in done["content"]


@pytest.mark.asyncio
async def test_without_reasoning_engines_top_candidate_is_used(tmp_path) -> None:
    router = build_router(tmp_path)
    await router.initialize()
    query = "meeting reminders and scheduling"
    expected = aggregate_hits(await router.search(query, 5), router.config.backends)[0]

    result = await router.route(query)

    assert result.backend_id == expected.backend_id
    assert result.fallback is True
    assert result.reasoning == FALLBACK_REASONING
    assert result.confidence == pytest.approx(expected.score)
    assert result.tool_name == "none"


@pytest.mark.asyncio
async def test_unconfigured_selection_falls_back(tmp_path) -> None:
    router = build_router(
        tmp_path,
        arbitration_llm=ScriptedChatModel({"backendId": "Z", "confidence": 1.0}),
    )
    await router.initialize()

    query = "weather forecast temperature"
    top = aggregate_hits(await router.search(query, 5), router.config.backends)[0]

    result = await router.route(query)

    assert top.backend_id == "weather"
    assert result.backend_id == top.backend_id
    assert result.confidence == pytest.approx(top.score)
    assert result.fallback is True
    assert result.reasoning == FALLBACK_REASONING
    assert [trace.fallback for trace in router.trace_store.list_recent()] == [True]


@pytest.mark.asyncio
async def test_tool_error_still_completes_the_request(tmp_path) -> None:
    router = build_router(
        tmp_path,
        arbitration_llm=ScriptedChatModel({"backendId": "calculator"}),
        synthesis_llm=ScriptedChatModel({"toolName": "divide", "arguments": {"a": 1}}),
    )
    await router.initialize()

    result = await router.route("divide one by zero")

    assert result.result["is_error"] is True
    assert "Tool reported an error" in result.content


@pytest.mark.asyncio
async def test_connect_failure_emits_single_error_event(tmp_path) -> None:
    sessions = default_sessions()
    del sessions["calendar"]
    router = build_router(
        tmp_path,
        arbitration_llm=ScriptedChatModel({"backendId": "calendar"}),
        connector=FakeConnector(sessions),
    )
    await router.initialize()

    events = await _collect(router, "book a meeting")

    assert events[-1].kind == "error"
    assert [event.kind for event in events].count("error") == 1
    assert events[-1].payload["stage"] == "connecting"
    assert "calendar" in events[-1].payload["message"]
    assert not router.connections.is_connected("calendar")

    with pytest.raises(RouteFailedError) as excinfo:
        await router.route("book a meeting")
    assert excinfo.value.stage == "connecting"
    assert router.trace_store.summary()["failed_requests"] == 2


@pytest.mark.asyncio
async def test_engine_failure_is_reported_at_its_stage(tmp_path) -> None:
    router = build_router(tmp_path, arbitration_llm=ExplodingChatModel())
    await router.initialize()

    events = await _collect(router, "anything")

    assert events[-1].state == PipelineState.ERROR
    assert events[-1].payload == {
        "stage": "arbitrating",
        "message": "reasoning engine unavailable",
    }


@pytest.mark.asyncio
async def test_routing_before_initialize_fails_at_search(tmp_path) -> None:
    router = build_router(tmp_path)

    with pytest.raises(RouteFailedError) as excinfo:
        await router.route("anything")

    assert excinfo.value.stage == "searching"


@pytest.mark.asyncio
async def test_concurrent_requests_have_independent_event_streams(tmp_path) -> None:
    connector = FakeConnector(default_sessions(), delay=0.02)
    router = build_router(
        tmp_path,
        arbitration_llm=ScriptedChatModel({"backendId": "calculator"}),
        synthesis_llm=ScriptedChatModel({"toolName": "add", "arguments": {"a": 1, "b": 1}}),
        connector=connector,
    )
    await router.initialize()

    streams = await asyncio.gather(*(_collect(router, f"add {i}") for i in range(3)))

    for events in streams:
        assert [event.sequence for event in events] == list(range(len(events)))
        assert events[-1].kind == "done"
    assert connector.opened == ["calculator"]


@pytest.mark.asyncio
async def test_stopping_consumer_halts_pipeline_without_closing_connection(tmp_path) -> None:
    sessions = default_sessions()
    synthesis_llm = BlockingChatModel({"toolName": "add", "arguments": {"a": 2, "b": 3}})
    router = build_router(
        tmp_path,
        arbitration_llm=ScriptedChatModel({"backendId": "calculator"}),
        synthesis_llm=synthesis_llm,
        connector=FakeConnector(sessions),
    )
    await router.initialize()

    seen = []
    async with aclosing(router.route_events("add 2 and 3")) as events:
        async for event in events:
            seen.append(event)
            if event.state == PipelineState.SYNTHESIZING:
                break

    await synthesis_llm.entered.wait()
    synthesis_llm.release.set()
    await _wait_for_trace(router)

    assert seen[-1].state == PipelineState.SYNTHESIZING
    assert sessions["calculator"].calls == []
    assert router.connections.is_connected("calculator")
    [trace] = router.trace_store.list_recent()
    assert trace.error_stage == "executing"
    assert trace.error_message == "consumer disconnected"


@pytest.mark.asyncio
async def test_three_backend_request_reaches_only_the_matching_backend(tmp_path) -> None:
    sessions = default_sessions()
    arbitration_llm = ScriptedChatModel(
        {"backendId": "calculator", "reasoning": "Arithmetic request.", "confidence": 0.9}
    )
    router = build_router(
        tmp_path,
        arbitration_llm=arbitration_llm,
        synthesis_llm=ScriptedChatModel({"toolName": "add", "arguments": {"a": 2, "b": 3}}),
        connector=FakeConnector(sessions),
    )
    await router.initialize()
    query = "Arithmetic calculator that can add and multiply numbers"

    hits = await router.search(query, 5)
    candidates = aggregate_hits(hits, router.config.backends)
    result = await router.route(query)
    direct = await router.execute_on_backend("calculator", "add", {"a": 2, "b": 3})

    assert hits[0].backend_id == "calculator"
    assert hits[0].score == pytest.approx(1.0)
    assert candidates[0].backend_id == "calculator"
    assert "Server ID: calculator" in arbitration_llm.calls[0][1].content
    assert result.backend_id == "calculator"
    assert result.fallback is False
    assert result.tool_name == "add"
    assert result.result["content"] == [{"type": "text", "text": "5"}]
    assert direct.content == [{"type": "text", "text": "5"}]
    assert direct.is_error is False
    assert direct.structured_content is None
    assert sessions["calculator"].calls == [("add", {"a": 2, "b": 3}), ("add", {"a": 2, "b": 3})]
    assert sessions["weather"].calls == []
    assert sessions["calendar"].calls == []
