"""In-process metrics and tracing for the reasoning pipeline.

Counters and latency histograms live in memory and are exposed through
``snapshot()``, which the coordinator folds into ``get_stats()``.

Usage:
    metrics = PipelineMetrics()
    with metrics.span("intent_analyzed", session_id=sid) as span:
        span.set_attribute("source", "oracle")
    metrics.increment("sessions.sealed")
"""

from __future__ import annotations

import time
import uuid
from collections import defaultdict, deque
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import numpy as np

_HISTOGRAM_WINDOW = 1000


@dataclass
class Span:
    """A trace span representing one pipeline stage."""

    span_id: str
    name: str
    start_time: float
    end_time: float | None = None
    session_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    status: str = "OK"
    error: str | None = None

    def set_attribute(self, key: str, value: Any) -> None:
        """Set a span attribute."""
        self.attributes[key] = value

    def record_exception(self, exc: BaseException) -> None:
        """Record an exception."""
        self.status = "ERROR"
        self.error = f"{type(exc).__name__}: {exc}"

    @property
    def duration_ms(self) -> float:
        """Get span duration in milliseconds."""
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "span_id": self.span_id,
            "name": self.name,
            "session_id": self.session_id,
            "duration_ms": round(self.duration_ms, 3),
            "status": self.status,
            "error": self.error,
            "attributes": dict(self.attributes),
        }


class PipelineMetrics:
    """Counters, histograms and a bounded ring of recent spans."""

    def __init__(self, recent_spans: int = 200) -> None:
        self._counters: defaultdict[str, int] = defaultdict(int)
        self._histograms: defaultdict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=_HISTOGRAM_WINDOW)
        )
        self._spans: deque[Span] = deque(maxlen=recent_spans)

    def increment(self, name: str, value: int = 1) -> None:
        """Increment a counter metric."""
        self._counters[name] += value

    def counter(self, name: str) -> int:
        """Current value of a counter (0 if never incremented)."""
        return self._counters.get(name, 0)

    def record_histogram(self, name: str, value: float) -> None:
        """Record a histogram value."""
        self._histograms[name].append(value)

    @contextmanager
    def span(self, name: str, session_id: str | None = None) -> Generator[Span, None, None]:
        """Context manager for timing a stage.

        Args:
            name: Stage name, e.g. "chains_built".
            session_id: Optional session ID to associate with.

        Yields:
            Span object for adding attributes.

        """
        span = Span(
            span_id=uuid.uuid4().hex[:16],
            name=name,
            start_time=time.perf_counter(),
            session_id=session_id,
        )
        try:
            yield span
        except BaseException as e:
            span.record_exception(e)
            raise
        finally:
            span.end_time = time.perf_counter()
            self._spans.append(span)
            self.record_histogram(f"stage.{name}.ms", span.duration_ms)

    def recent_spans(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent spans, newest first."""
        return [s.to_dict() for s in list(self._spans)[-limit:][::-1]]

    def histogram_summary(self, name: str) -> dict[str, float]:
        """Count, mean and percentiles for one histogram."""
        values = self._histograms.get(name)
        if not values:
            return {"count": 0}
        arr = np.fromiter(values, dtype=float)
        p50, p95, p99 = np.percentile(arr, [50, 95, 99])
        return {
            "count": int(arr.size),
            "mean": round(float(arr.mean()), 3),
            "p50": round(float(p50), 3),
            "p95": round(float(p95), 3),
            "p99": round(float(p99), 3),
            "max": round(float(arr.max()), 3),
        }

    def snapshot(self) -> dict[str, Any]:
        """Point-in-time copy of every metric."""
        return {
            "counters": dict(self._counters),
            "histograms": {name: self.histogram_summary(name) for name in self._histograms},
        }
