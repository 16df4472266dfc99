"""Configuration models for the router."""

from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BackendDescriptor(BaseModel):
    """A backend MCP server and how to launch it."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    capabilities: list[str] = Field(default_factory=list)
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None


class IndexConfig(BaseModel):
    """Where the backend embedding index is persisted."""

    model_config = ConfigDict(populate_by_name=True)

    index_path: Path = Field(default=Path("data/backends.faiss"), alias="indexPath")
    metadata_path: Path = Field(
        default=Path("data/backends.json"), alias="metadataPath"
    )
    dimension: int = Field(default=1536, ge=1)


class ReasoningConfig(BaseModel):
    """Embedding and chat model settings."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str | None = Field(default=None, alias="apiKey", repr=False)
    embedding_model: str = Field(
        default="text-embedding-3-small", alias="embeddingModel"
    )
    chat_model: str = Field(default="gpt-4o-mini", alias="chatModel")
    arbitration_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    synthesis_temperature: float = Field(default=0.2, ge=0.0, le=2.0)


class PipelineConfig(BaseModel):
    """Per-request pipeline knobs."""

    search_top_k: int = Field(default=5, ge=1)
    max_snippets: int = Field(default=2, ge=1)
    event_buffer_size: int = Field(default=64, ge=1)


class RouterConfig(BaseModel):
    """Top-level router configuration."""

    model_config = ConfigDict(populate_by_name=True)

    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig, alias="openai")
    index: IndexConfig = Field(default_factory=IndexConfig, alias="faiss")
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    backends: list[BackendDescriptor] = Field(
        default_factory=list, alias="mcpServers"
    )

    @field_validator("backends")
    @classmethod
    def _unique_backend_ids(
        cls, backends: list[BackendDescriptor]
    ) -> list[BackendDescriptor]:
        seen: set[str] = set()
        for backend in backends:
            if backend.id in seen:
                raise ValueError(f"Duplicate backend id: {backend.id}")
            seen.add(backend.id)
        return backends

    def get_backend(self, backend_id: str) -> BackendDescriptor | None:
        for backend in self.backends:
            if backend.id == backend_id:
                return backend
        return None


def load_config(path: str | Path) -> RouterConfig:
    """Load a JSON config file; the API key is taken from ``OPENAI_API_KEY``."""

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    config = RouterConfig.model_validate(raw)
    api_key = os.getenv("OPENAI_API_KEY")
    if api_key:
        config.reasoning.api_key = api_key
    return config
