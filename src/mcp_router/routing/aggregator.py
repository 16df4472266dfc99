"""Groups search hits into ranked per-backend candidates."""

from __future__ import annotations

from loguru import logger

from mcp_router.config import BackendDescriptor
from mcp_router.types import Candidate, SearchHit


def aggregate_hits(
    hits: list[SearchHit],
    backends: list[BackendDescriptor],
    *,
    max_snippets: int = 2,
) -> list[Candidate]:
    """Rank backends by the mean score of their hits.

    A backend matched moderately by several fragments can outrank one matched
    strongly by a single fragment. Equal scores keep first-appearance order.
    """

    by_id = {backend.id: backend for backend in backends}
    grouped: dict[str, list[SearchHit]] = {}
    for hit in hits:
        if hit.backend_id not in by_id:
            logger.warning("Dropping hit for unconfigured backend {}", hit.backend_id)
            continue
        grouped.setdefault(hit.backend_id, []).append(hit)

    candidates: list[Candidate] = []
    for backend_id, backend_hits in grouped.items():
        backend = by_id[backend_id]
        best = sorted(backend_hits, key=lambda item: item.score, reverse=True)
        candidates.append(
            Candidate(
                backend_id=backend_id,
                backend_name=backend.name,
                score=sum(hit.score for hit in backend_hits) / len(backend_hits),
                snippets=[hit.matched_text for hit in best[:max_snippets]],
                description=backend.description,
                capabilities=list(backend.capabilities),
            )
        )

    return sorted(candidates, key=lambda item: item.score, reverse=True)
