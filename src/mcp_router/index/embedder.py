"""Embedding abstractions and deterministic baseline implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt
from typing import Any, cast


class Embedder(ABC):
    """Embedding function used for both index build and query time."""

    dimension: int

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many fragments."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed one query."""

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        return self.embed_documents(texts)

    async def aembed_query(self, text: str) -> list[float]:
        return self.embed_query(text)


class HashingEmbedder(Embedder):
    """Deterministic token-hashing embedding without external model calls.

    Used for tests and when no embedding provider is configured. Identical
    texts always map to identical unit vectors.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().replace(",", " ").replace(":", " ").split()
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class OpenAIEmbedder(Embedder):
    """Adapter over LangChain ``OpenAIEmbeddings``."""

    def __init__(self, embeddings: Any, dimension: int) -> None:
        self._embeddings = embeddings
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return cast(list[list[float]], self._embeddings.embed_documents(texts))

    def embed_query(self, text: str) -> list[float]:
        return cast(list[float], self._embeddings.embed_query(text))

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        return cast(list[list[float]], await self._embeddings.aembed_documents(texts))

    async def aembed_query(self, text: str) -> list[float]:
        return cast(list[float], await self._embeddings.aembed_query(text))
