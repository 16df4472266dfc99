"""Maps a query and a live tool catalog to one concrete tool call."""

from __future__ import annotations

import json
from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage
from loguru import logger

from mcp_router.config import BackendDescriptor
from mcp_router.errors import SynthesisError
from mcp_router.routing.parsing import extract_json_object, message_text
from mcp_router.types import ToolDescriptor, ToolInvocation

_SYSTEM_PROMPT = "You are an expert at mapping user queries to appropriate tool calls."


def build_tool_prompt(
    query: str, backend: BackendDescriptor, tools: list[ToolDescriptor]
) -> str:
    catalog = [
        {"name": tool.name, "description": tool.description, "schema": tool.input_schema}
        for tool in tools
    ]
    return (
        f"Server: {backend.name}\n"
        f'User Query: "{query}"\n\n'
        f"Available Tools:\n{json.dumps(catalog, indent=2)}\n\n"
        "Based on the user query, determine which tool to call and what arguments to provide.\n"
        "Respond with a JSON object containing:\n"
        "- toolName: The name of the tool to call\n"
        "- arguments: An object with the tool arguments, matching the tool schema\n\n"
        'If no tool is suitable, respond with { "toolName": null, "arguments": {} }'
    )


class ToolCallSynthesizer:
    """Asks the reasoning engine for ``{toolName, arguments}``.

    Arguments are passed through untouched; the backend validates them.
    """

    def __init__(self, llm: Any | None) -> None:
        self.llm = llm

    async def synthesize(
        self,
        query: str,
        backend: BackendDescriptor,
        tools: list[ToolDescriptor],
    ) -> ToolInvocation:
        if self.llm is None or not tools:
            return ToolInvocation(tool_name="")

        response = await self.llm.ainvoke(
            [
                SystemMessage(content=_SYSTEM_PROMPT),
                HumanMessage(content=build_tool_prompt(query, backend, tools)),
            ]
        )
        return self.parse(message_text(response))

    @staticmethod
    def parse(raw: str) -> ToolInvocation:
        try:
            data = extract_json_object(raw)
        except ValueError as exc:
            raise SynthesisError(f"Unparseable tool call: {exc}") from exc

        tool_name = data.get("toolName") or data.get("tool_name") or ""
        arguments = data.get("arguments")
        if not isinstance(arguments, dict):
            if arguments is not None:
                logger.warning("Ignoring non-object tool arguments: {!r}", arguments)
            arguments = {}
        return ToolInvocation(tool_name=str(tool_name), arguments=arguments)
