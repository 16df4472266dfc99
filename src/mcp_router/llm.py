"""Factories for the reasoning engine and embedding function."""

from __future__ import annotations

from typing import Any

from loguru import logger

from mcp_router.config import IndexConfig, ReasoningConfig
from mcp_router.index.embedder import Embedder, HashingEmbedder, OpenAIEmbedder


def create_chat_model(config: ReasoningConfig, *, temperature: float) -> Any | None:
    """Build a JSON-mode chat model, or ``None`` when no API key is configured."""

    if not config.api_key:
        return None

    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(
        model=config.chat_model,
        temperature=temperature,
        api_key=config.api_key,
    )
    return llm.bind(response_format={"type": "json_object"})


def create_embedder(reasoning: ReasoningConfig, index: IndexConfig) -> Embedder:
    if not reasoning.api_key:
        logger.warning(
            "OPENAI_API_KEY not set; using deterministic hashing embeddings"
        )
        return HashingEmbedder(dimension=index.dimension)

    from langchain_openai import OpenAIEmbeddings

    embeddings = OpenAIEmbeddings(
        model=reasoning.embedding_model,
        api_key=reasoning.api_key,
    )
    return OpenAIEmbedder(embeddings, dimension=index.dimension)
