"""Route tracing and latency accounting."""

from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(slots=True)
class RouteTrace:
    trace_id: str
    timestamp_utc: str
    query: str
    backend_id: str | None
    tool_name: str | None
    confidence: float | None
    fallback: bool
    stage_latency_ms: dict[str, float]
    latency_ms: float
    error_stage: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error_stage is None


@dataclass(slots=True)
class TraceBuilder:
    """Accumulates stage timings for one in-flight request."""

    query: str
    stage_latency_ms: dict[str, float] = field(default_factory=dict)
    backend_id: str | None = None
    tool_name: str | None = None
    confidence: float | None = None
    fallback: bool = False
    _start: float = field(default_factory=time.perf_counter)

    def record_stage(self, stage: str, elapsed_ms: float) -> None:
        self.stage_latency_ms[stage] = self.stage_latency_ms.get(stage, 0.0) + elapsed_ms

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0


class TraceStore:
    """In-memory, bounded trace storage for API-level observability."""

    def __init__(self, max_records: int = 1000) -> None:
        self._records: OrderedDict[str, RouteTrace] = OrderedDict()
        self._max_records = max_records

    def create_record(
        self,
        builder: TraceBuilder,
        *,
        error_stage: str | None = None,
        error_message: str | None = None,
    ) -> RouteTrace:
        record = RouteTrace(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            query=builder.query,
            backend_id=builder.backend_id,
            tool_name=builder.tool_name,
            confidence=builder.confidence,
            fallback=builder.fallback,
            stage_latency_ms=dict(builder.stage_latency_ms),
            latency_ms=builder.elapsed_ms,
            error_stage=error_stage,
            error_message=error_message,
        )
        self._records[record.trace_id] = record
        while len(self._records) > self._max_records:
            self._records.popitem(last=False)
        return record

    def get(self, trace_id: str) -> RouteTrace:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[RouteTrace]:
        if limit <= 0:
            return []
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate route metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "failed_requests": 0,
                "fallback_decisions": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_requests": total,
            "failed_requests": sum(1 for record in records if not record.succeeded),
            "fallback_decisions": sum(1 for record in records if record.fallback),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
        }


class Timer:
    """Simple context timer used by the pipeline."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
