"""LLM-assisted backend selection with deterministic fallback."""

from __future__ import annotations

from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from mcp_router.config import BackendDescriptor
from mcp_router.errors import ArbitrationParseError, NoCandidatesError
from mcp_router.routing.parsing import extract_json_object, message_text
from mcp_router.types import Candidate, RoutingDecision

FALLBACK_REASONING = "Fallback to highest scoring backend from vector search"
DEFAULT_REASONING = "Selected by reasoning engine"
DEFAULT_CONFIDENCE = 0.5

_SYSTEM_PROMPT = (
    "You are an expert at routing requests to the appropriate MCP server. "
    "Analyze the user query and candidate servers, then select the best server "
    "to handle the request."
)


class ArbitrationPayload(BaseModel):
    """Selection returned by the reasoning engine.

    ``backend_id`` is required; ``reasoning`` and ``confidence`` are optional and
    receive defaults when omitted. A NaN or infinite confidence is rejected.
    """

    model_config = ConfigDict(extra="ignore")

    backend_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("backendId", "serverId", "backend_id"),
    )
    reasoning: str | None = None
    confidence: float | None = Field(default=None, allow_inf_nan=False)


def build_selection_prompt(
    query: str, candidates: list[Candidate], context: str | None = None
) -> str:
    lines = [f'User Query: "{query}"', ""]
    if context:
        lines.extend([f"Additional Context: {context}", ""])

    lines.extend(["Candidate Servers (ranked by similarity score):", ""])
    for candidate in candidates:
        lines.append(f"Server ID: {candidate.backend_id}")
        lines.append(f"Name: {candidate.backend_name}")
        lines.append(f"Description: {candidate.description}")
        lines.append(f"Capabilities: {', '.join(candidate.capabilities)}")
        lines.append(f"Similarity Score: {candidate.score:.4f}")
        lines.append("Matched Descriptions:")
        lines.extend(f"  - {snippet}" for snippet in candidate.snippets)
        lines.append("")

    lines.extend(
        [
            "Based on the user query and candidate servers, select the most appropriate server.",
            "Respond with a JSON object containing:",
            "- backendId: The ID of the selected server",
            "- reasoning: A brief explanation of why this server was selected (1-2 sentences)",
            "- confidence: A number between 0 and 1 indicating your confidence in this selection",
        ]
    )
    return "\n".join(lines)


class SelectionArbiter:
    """Makes the final backend choice for a query.

    Without a reasoning engine every decision takes the fallback path, which
    keeps routing usable offline.
    """

    def __init__(self, llm: Any | None, backends: list[BackendDescriptor]) -> None:
        self.llm = llm
        self._backends = list(backends)
        self._by_id = {backend.id: backend for backend in backends}

    async def arbitrate(
        self,
        query: str,
        candidates: list[Candidate],
        context: str | None = None,
    ) -> RoutingDecision:
        if not candidates:
            candidates = self._configured_candidates()
            if not candidates:
                raise NoCandidatesError("No backends are configured to route to")

        if self.llm is None:
            return self._fallback(candidates[0])

        response = await self.llm.ainvoke(
            [
                SystemMessage(content=_SYSTEM_PROMPT),
                HumanMessage(content=build_selection_prompt(query, candidates, context)),
            ]
        )

        try:
            payload = self.parse(message_text(response))
        except ArbitrationParseError as exc:
            logger.warning("Arbitration output unusable, falling back: {}", exc)
            return self._fallback(candidates[0])

        backend = self._by_id.get(payload.backend_id)
        if backend is None:
            logger.warning(
                "Reasoning engine chose unconfigured backend {!r}, falling back",
                payload.backend_id,
            )
            return self._fallback(candidates[0])

        confidence = (
            DEFAULT_CONFIDENCE
            if payload.confidence is None
            else min(max(payload.confidence, 0.0), 1.0)
        )
        return RoutingDecision(
            backend=backend,
            reasoning=payload.reasoning or DEFAULT_REASONING,
            confidence=confidence,
        )

    @staticmethod
    def parse(raw: str) -> ArbitrationPayload:
        try:
            return ArbitrationPayload.model_validate(extract_json_object(raw))
        except (ValueError, ValidationError) as exc:
            raise ArbitrationParseError(str(exc)) from exc

    def _fallback(self, top: Candidate) -> RoutingDecision:
        backend = self._by_id.get(top.backend_id)
        if backend is None:
            raise NoCandidatesError(f"Top candidate {top.backend_id} is not configured")
        return RoutingDecision(
            backend=backend,
            reasoning=FALLBACK_REASONING,
            confidence=top.score,
            fallback=True,
        )

    def _configured_candidates(self) -> list[Candidate]:
        return [
            Candidate(
                backend_id=backend.id,
                backend_name=backend.name,
                score=0.0,
                snippets=[],
                description=backend.description,
                capabilities=list(backend.capabilities),
            )
            for backend in self._backends
        ]
