"""Shared domain models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from mcp_router.config import BackendDescriptor

NO_TOOL = "none"


@dataclass(slots=True, frozen=True)
class IndexEntry:
    """Metadata for one embedded fragment; its vector sits at the same position."""

    entry_id: str
    backend_id: str
    backend_name: str
    text: str

    def to_record(self) -> dict[str, str]:
        return {
            "id": self.entry_id,
            "text": self.text,
            "backendId": self.backend_id,
            "backendName": self.backend_name,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "IndexEntry":
        return cls(
            entry_id=str(record["id"]),
            backend_id=str(record["backendId"]),
            backend_name=str(record["backendName"]),
            text=str(record["text"]),
        )


@dataclass(slots=True)
class SearchHit:
    """A single similarity search match."""

    backend_id: str
    backend_name: str
    score: float
    matched_text: str


@dataclass(slots=True)
class Candidate:
    """A backend ranked by the mean score of its hits."""

    backend_id: str
    backend_name: str
    score: float
    snippets: list[str]
    description: str = ""
    capabilities: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RoutingDecision:
    backend: BackendDescriptor
    reasoning: str
    confidence: float
    fallback: bool = False


@dataclass(slots=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(slots=True)
class ResourceDescriptor:
    uri: str
    name: str
    description: str = ""
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ToolInvocation:
    """Tool chosen for a query. An empty ``tool_name`` means no call is needed."""

    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not self.tool_name


@dataclass(slots=True)
class ToolResult:
    """Raw payload returned by a backend tool call."""

    content: list[Any]
    is_error: bool = False
    structured_content: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PipelineState(str, Enum):
    START = "start"
    SEARCHING = "searching"
    ARBITRATING = "arbitrating"
    CONNECTING = "connecting"
    DISCOVERING_TOOLS = "discovering_tools"
    SYNTHESIZING = "synthesizing"
    EXECUTING = "executing"
    FORMATTING = "formatting"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.ERROR)


@dataclass(slots=True)
class ProgressEvent:
    """One ordered event emitted on a pipeline state transition."""

    kind: str
    state: PipelineState
    sequence: int
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "state": self.state.value,
            "sequence": self.sequence,
            **self.payload,
        }


@dataclass(slots=True)
class RouteResult:
    """Terminal outcome of a routed request."""

    backend_id: str
    backend_name: str
    reasoning: str
    confidence: float
    tool_name: str
    tool_arguments: dict[str, Any]
    result: dict[str, Any] | None
    content: str
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
