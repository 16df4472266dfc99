"""FAISS-backed similarity index over backend description fragments."""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import faiss
import numpy as np
from loguru import logger

from mcp_router.config import BackendDescriptor, IndexConfig
from mcp_router.errors import EmbeddingDimensionError, InitializationError, RouterError
from mcp_router.index.embedder import Embedder
from mcp_router.types import IndexEntry, SearchHit


def fragments_for(descriptor: BackendDescriptor) -> list[str]:
    """Canonical texts embedded for one backend."""

    texts = [
        descriptor.description,
        f"{descriptor.name}: {descriptor.description}",
        f"Capabilities: {', '.join(descriptor.capabilities)}",
    ]
    texts.extend(
        f"{descriptor.name} can handle {capability} tasks"
        for capability in descriptor.capabilities
    )
    return texts


@dataclass(slots=True, frozen=True)
class _Snapshot:
    index: Any
    entries: tuple[IndexEntry, ...]


class EmbeddingIndex:
    """Flat L2 index plus a position-aligned metadata sidecar.

    Searches read whichever snapshot is current when they start. Rebuilds
    construct a complete shadow snapshot, persist it, then swap the reference,
    so a search never observes a half-built index.
    """

    def __init__(self, embedder: Embedder, config: IndexConfig | None = None) -> None:
        self._embedder = embedder
        self._config = config or IndexConfig()
        self._snapshot: _Snapshot | None = None
        self._rebuild_lock = asyncio.Lock()

    @property
    def dimension(self) -> int:
        return self._config.dimension

    @property
    def size(self) -> int:
        return len(self._snapshot.entries) if self._snapshot is not None else 0

    @property
    def is_ready(self) -> bool:
        return self._snapshot is not None

    def entries(self) -> list[IndexEntry]:
        return list(self._snapshot.entries) if self._snapshot is not None else []

    async def initialize(self, descriptors: list[BackendDescriptor]) -> None:
        """Load persisted artifacts when consistent, otherwise rebuild."""

        try:
            self._snapshot = self._load(descriptors)
        except InitializationError as exc:
            logger.warning("Index artifacts unusable, rebuilding: {}", exc)
            await self.rebuild(descriptors)
            return
        logger.info("Loaded backend index with {} vectors", self.size)

    async def rebuild(self, descriptors: list[BackendDescriptor]) -> None:
        """Re-derive every fragment from scratch and swap in the new index."""

        async with self._rebuild_lock:
            snapshot = await self._build(descriptors)
            self._persist(snapshot)
            self._snapshot = snapshot
        logger.info(
            "Built backend index with {} vectors for {} backends",
            len(snapshot.entries),
            len(descriptors),
        )

    async def search(self, query: str, k: int = 5) -> list[SearchHit]:
        snapshot = self._snapshot
        if snapshot is None:
            raise InitializationError("Embedding index is not initialized")
        if k <= 0 or not snapshot.entries:
            return []

        query_vector = self._as_matrix([await self._embedder.aembed_query(query)])
        # Flat index over a handful of fragments: score everything, then order
        # by (distance, position) so equal scores keep insertion order.
        distances, labels = snapshot.index.search(query_vector, len(snapshot.entries))
        ranked = sorted(
            (max(float(distance), 0.0), int(label))
            for distance, label in zip(distances[0], labels[0])
            if label >= 0
        )

        hits: list[SearchHit] = []
        for distance, label in ranked[:k]:
            entry = snapshot.entries[label]
            hits.append(
                SearchHit(
                    backend_id=entry.backend_id,
                    backend_name=entry.backend_name,
                    score=1.0 / (1.0 + distance),
                    matched_text=entry.text,
                )
            )
        return hits

    async def _build(self, descriptors: list[BackendDescriptor]) -> _Snapshot:
        entries: list[IndexEntry] = []
        texts: list[str] = []
        for descriptor in descriptors:
            for text in fragments_for(descriptor):
                entries.append(
                    IndexEntry(
                        entry_id=f"{descriptor.id}-{len(entries)}",
                        backend_id=descriptor.id,
                        backend_name=descriptor.name,
                        text=text,
                    )
                )
                texts.append(text)

        index = faiss.IndexFlatL2(self.dimension)
        if texts:
            try:
                vectors = await self._embedder.aembed_documents(texts)
            except RouterError:
                raise
            except Exception as exc:
                raise InitializationError(
                    f"Embedding function unavailable during index build: {exc}"
                ) from exc
            if len(vectors) != len(texts):
                raise InitializationError(
                    f"Embedder returned {len(vectors)} vectors for {len(texts)} fragments"
                )
            index.add(self._as_matrix(vectors))
        return _Snapshot(index=index, entries=tuple(entries))

    def _load(self, descriptors: list[BackendDescriptor]) -> _Snapshot:
        index_path = self._config.index_path
        metadata_path = self._config.metadata_path
        if not index_path.exists() or not metadata_path.exists():
            raise InitializationError("Index artifacts not found")

        try:
            index = faiss.read_index(str(index_path))
            records = json.loads(metadata_path.read_text(encoding="utf-8"))
            entries = tuple(IndexEntry.from_record(record) for record in records)
        except (OSError, RuntimeError, ValueError, KeyError, TypeError) as exc:
            raise InitializationError(f"Index artifacts unreadable: {exc}") from exc

        if index.ntotal != len(entries):
            raise InitializationError(
                f"Index has {index.ntotal} vectors but metadata has {len(entries)} records"
            )
        if index.d != self.dimension:
            raise EmbeddingDimensionError(self.dimension, index.d)

        indexed_ids = {entry.backend_id for entry in entries}
        configured_ids = {descriptor.id for descriptor in descriptors}
        if indexed_ids != configured_ids:
            raise InitializationError("Index backends differ from configured backends")
        return _Snapshot(index=index, entries=entries)

    def _persist(self, snapshot: _Snapshot) -> None:
        index_path = self._config.index_path
        metadata_path = self._config.metadata_path
        index_path.parent.mkdir(parents=True, exist_ok=True)
        metadata_path.parent.mkdir(parents=True, exist_ok=True)

        tmp_index = _tmp_path(index_path)
        tmp_metadata = _tmp_path(metadata_path)
        faiss.write_index(snapshot.index, str(tmp_index))
        tmp_metadata.write_text(
            json.dumps([entry.to_record() for entry in snapshot.entries], indent=2),
            encoding="utf-8",
        )
        os.replace(tmp_index, index_path)
        os.replace(tmp_metadata, metadata_path)

    def _as_matrix(self, vectors: list[list[float]]) -> np.ndarray:
        matrix = np.asarray(vectors, dtype="float32")
        if matrix.ndim != 2 or matrix.shape[1] != self.dimension:
            actual = matrix.shape[-1] if matrix.ndim else 0
            raise EmbeddingDimensionError(self.dimension, int(actual))
        return matrix


def _tmp_path(path: Path) -> Path:
    return path.with_name(f"{path.name}.tmp")
