"""
Per-order correlation tracing.

One LoyaltyTracer is constructed for each order-processing call and handed
to every collaborator that participates in it. Spans are kept in memory and
returned by end_trace() so callers can log or persist the whole timeline.

Not safe for concurrent spans from multiple tasks on the same instance.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any


class LoyaltyTracer:
    """Timestamped, ordered span list for one logical operation."""

    def __init__(self):
        self._trace_id: str | None = None
        self._context: dict[str, Any] = {}
        self._spans: list[dict[str, Any]] = []
        self._started_at: datetime | None = None
        self._start_monotonic: float | None = None

    @property
    def trace_id(self) -> str | None:
        return self._trace_id

    @property
    def is_active(self) -> bool:
        return self._trace_id is not None

    def start_trace(self, context: dict[str, Any] | None = None) -> str:
        """Begin a new trace, discarding any spans from a previous one."""
        self._trace_id = str(uuid.uuid4())
        self._context = dict(context or {})
        self._spans = []
        self._started_at = datetime.now(timezone.utc)
        self._start_monotonic = time.monotonic()
        return self._trace_id

    def elapsed_ms(self) -> int:
        if self._start_monotonic is None:
            return 0
        return int((time.monotonic() - self._start_monotonic) * 1000)

    def span(self, name: str, **data: Any) -> None:
        """Record a span. No-op when no trace is active."""
        if not self.is_active:
            return
        self._spans.append(
            {
                "name": name,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "elapsed_ms": self.elapsed_ms(),
                **data,
            }
        )

    def get_spans(self) -> list[dict[str, Any]]:
        return list(self._spans)

    def end_trace(self) -> dict[str, Any]:
        """Close the trace and return its summary.

        Returns a zeroed empty trace when called without an active trace,
        so a second call after the first is harmless.
        """
        if not self.is_active:
            return {
                "id": None,
                "duration_ms": 0,
                "started_at": None,
                "ended_at": None,
                "context": {},
                "spans": [],
                "span_count": 0,
            }

        ended_at = datetime.now(timezone.utc)
        summary = {
            "id": self._trace_id,
            "duration_ms": self.elapsed_ms(),
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "ended_at": ended_at.isoformat(),
            "context": self._context,
            "spans": self._spans,
            "span_count": len(self._spans),
        }

        self._trace_id = None
        self._context = {}
        self._spans = []
        self._started_at = None
        self._start_monotonic = None
        return summary
