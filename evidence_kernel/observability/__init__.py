"""
Observability - Tracing and Metrics for Kernel Operations

Every kernel request (ingest, attach, seal, evaluate, reads) is traced as a
span and recorded as a latency/error observation, labelled by operation and
response status.

Spans and metrics never carry declaration contents or structured payloads;
attributes are limited to ids, digests and counts.

Usage:
    from evidence_kernel.observability import trace_operation, SpanKind

    with trace_operation("seal", SpanKind.STATE_TRANSITION, {"draft_id": draft_id}) as span:
        evidence = machine.seal(tenant_id, draft_id)
        span.set_attribute("ledger_state", evidence.ledger_state.value)
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# SPAN & TRACE TYPES
# =============================================================================

class SpanKind(Enum):
    """Type of kernel operation being traced."""
    COMMAND = "command"
    STATE_TRANSITION = "state_transition"
    EVALUATION = "evaluation"
    QUERY = "query"
    DATABASE = "database"
    AUDIT = "audit"


class SpanStatus(Enum):
    OK = "ok"
    ERROR = "error"


@dataclass
class Span:
    """
    A single traced operation.

    Spans nest through the tracer's thread-local stack.
    """
    span_id: str
    trace_id: str
    parent_span_id: Optional[str]
    name: str
    kind: SpanKind
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None
    status: SpanStatus = SpanStatus.OK
    error_message: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)

    def set_attribute(self, key: str, value: Any):
        self.attributes[key] = value

    def add_event(self, name: str, attributes: Optional[Dict] = None):
        self.events.append({
            "name": name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "attributes": attributes or {},
        })

    def set_error(self, error: Exception):
        self.status = SpanStatus.ERROR
        self.error_message = f"{type(error).__name__}: {error}"

    def end(self):
        self.end_time = datetime.now(timezone.utc)
        self.duration_ms = (self.end_time - self.start_time).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "span_id": self.span_id,
            "trace_id": self.trace_id,
            "parent_span_id": self.parent_span_id,
            "name": self.name,
            "kind": self.kind.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "error_message": self.error_message,
            "attributes": self.attributes,
            "events": self.events,
        }

    def to_log_line(self) -> str:
        """Format as single log line."""
        marker = "OK" if self.status == SpanStatus.OK else "ERR"
        duration = f"{self.duration_ms:.1f}ms" if self.duration_ms is not None else "?"
        attrs = " ".join(f"{k}={v}" for k, v in sorted(self.attributes.items())[:6])
        return f"{marker} [{self.kind.value}] {self.name} ({duration}) trace={self.trace_id[:8]} {attrs}"


@dataclass
class Trace:
    """All spans of one end-to-end request."""
    trace_id: str
    name: str
    spans: List[Span] = field(default_factory=list)
    total_duration_ms: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def add_span(self, span: Span):
        self.spans.append(span)
        if not self.started_at or span.start_time < self.started_at:
            self.started_at = span.start_time
        if span.end_time and (not self.completed_at or span.end_time > self.completed_at):
            self.completed_at = span.end_time

    def finalize(self):
        if self.started_at and self.completed_at:
            self.total_duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "name": self.name,
            "spans": [s.to_dict() for s in self.spans],
            "total_duration_ms": self.total_duration_ms,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


# =============================================================================
# TRACER
# =============================================================================

class Tracer:
    """
    Creates spans and groups them into traces.

    Thread-safe; the current trace and span stack are thread-local.

    Usage:
        tracer = Tracer()
        with tracer.start_trace("evaluate_readiness", trace_id=correlation_id):
            with tracer.start_span("rule_evaluation", SpanKind.EVALUATION) as span:
                span.set_attribute("rule_count", 4)
    """

    MAX_COMPLETED_TRACES = 1000

    def __init__(
        self,
        service_name: str = "evidence-kernel",
        export_logs: bool = True,
        export_callback: Optional[Callable[[Span], None]] = None,
    ):
        self.service_name = service_name
        self.export_logs = export_logs
        self.export_callback = export_callback
        self._local = threading.local()
        self._completed_traces: List[Trace] = []
        self._lock = threading.Lock()

    @property
    def _current_trace(self) -> Optional[Trace]:
        return getattr(self._local, "current_trace", None)

    @_current_trace.setter
    def _current_trace(self, trace: Optional[Trace]):
        self._local.current_trace = trace

    @property
    def _current_span(self) -> Optional[Span]:
        return getattr(self._local, "current_span", None)

    @_current_span.setter
    def _current_span(self, span: Optional[Span]):
        self._local.current_span = span

    @contextmanager
    def start_trace(self, name: str, trace_id: Optional[str] = None) -> Iterator[Trace]:
        """Start a trace; `trace_id` defaults to a fresh id (pass the correlation id to link logs)."""
        trace = Trace(trace_id=trace_id or uuid.uuid4().hex, name=name)
        old_trace = self._current_trace
        self._current_trace = trace
        try:
            yield trace
        finally:
            trace.finalize()
            self._current_trace = old_trace
            with self._lock:
                self._completed_traces.append(trace)
                if len(self._completed_traces) > self.MAX_COMPLETED_TRACES:
                    self._completed_traces = self._completed_traces[-self.MAX_COMPLETED_TRACES:]

    @contextmanager
    def start_span(
        self,
        name: str,
        kind: SpanKind,
        attributes: Optional[Dict] = None,
    ) -> Iterator[Span]:
        trace_id = self._current_trace.trace_id if self._current_trace else uuid.uuid4().hex
        parent = self._current_span

        span = Span(
            span_id=uuid.uuid4().hex[:16],
            trace_id=trace_id,
            parent_span_id=parent.span_id if parent else None,
            name=name,
            kind=kind,
            start_time=datetime.now(timezone.utc),
            attributes=dict(attributes or {}),
        )
        self._current_span = span

        try:
            yield span
        except Exception as e:
            span.set_error(e)
            raise
        finally:
            span.end()
            self._current_span = parent
            if self._current_trace:
                self._current_trace.add_span(span)
            self._export_span(span)

    def _export_span(self, span: Span):
        if self.export_logs:
            logger.info(span.to_log_line())

        if self.export_callback:
            try:
                self.export_callback(span)
            except Exception as e:
                logger.warning(f"Span export callback failed: {e}")

    def get_recent_traces(self, limit: int = 100) -> List[Trace]:
        with self._lock:
            return self._completed_traces[-limit:]


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

@dataclass
class MetricsBucket:
    """Aggregated observations for one metric and label set."""
    count: int = 0
    total_duration_ms: float = 0.0
    errors: int = 0
    latencies: List[float] = field(default_factory=list)

    def record(self, duration_ms: float, error: bool = False):
        self.count += 1
        self.total_duration_ms += duration_ms
        if error:
            self.errors += 1
        self.latencies.append(duration_ms)

    @property
    def mean_latency(self) -> float:
        return self.total_duration_ms / self.count if self.count else 0.0

    def quantile(self, q: float) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        return ordered[min(int(len(ordered) * q), len(ordered) - 1)]

    @property
    def error_rate(self) -> float:
        return self.errors / self.count if self.count else 0.0


class MetricsCollector:
    """
    Collects request latencies and error counts.

    Exports Prometheus text format.
    """

    def __init__(self):
        self._metrics: Dict[str, MetricsBucket] = defaultdict(MetricsBucket)
        self._lock = threading.Lock()

    def record(
        self,
        metric_name: str,
        duration_ms: float,
        error: bool = False,
        labels: Optional[Dict[str, str]] = None,
    ):
        key = metric_name
        if labels:
            label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
            key = f"{metric_name}{{{label_str}}}"

        with self._lock:
            self._metrics[key].record(duration_ms, error)

    def get_metrics(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            return {
                name: {
                    "count": bucket.count,
                    "mean_latency_ms": bucket.mean_latency,
                    "p50_latency_ms": bucket.quantile(0.5),
                    "p95_latency_ms": bucket.quantile(0.95),
                    "p99_latency_ms": bucket.quantile(0.99),
                    "error_rate": bucket.error_rate,
                }
                for name, bucket in self._metrics.items()
            }

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        with self._lock:
            for name, bucket in sorted(self._metrics.items()):
                if "{" in name:
                    base_name, labels = name.split("{", 1)
                    labels = labels.rstrip("}")
                else:
                    base_name, labels = name, ""

                label_str = f"{{{labels}}}" if labels else ""
                sep = "," if labels else ""

                lines.append(f"# HELP {base_name}_total Total requests")
                lines.append(f"{base_name}_total{label_str} {bucket.count}")
                lines.append(f"# HELP {base_name}_latency_ms Latency in milliseconds")
                for q in ("0.5", "0.95", "0.99"):
                    lines.append(
                        f'{base_name}_latency_ms{{{labels}{sep}quantile="{q}"}} {bucket.quantile(float(q)):.2f}'
                    )
                lines.append(f"# HELP {base_name}_errors_total Total errors")
                lines.append(f"{base_name}_errors_total{label_str} {bucket.errors}")

        return "\n".join(lines)

    def reset(self):
        with self._lock:
            self._metrics.clear()


# =============================================================================
# GLOBAL INSTANCES
# =============================================================================

_global_tracer: Optional[Tracer] = None
_global_metrics: Optional[MetricsCollector] = None


def get_tracer() -> Tracer:
    """Get or create global tracer."""
    global _global_tracer
    if _global_tracer is None:
        _global_tracer = Tracer()
    return _global_tracer


def get_metrics() -> MetricsCollector:
    """Get or create global metrics collector."""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


@contextmanager
def trace_operation(
    name: str,
    kind: SpanKind = SpanKind.COMMAND,
    attributes: Optional[Dict] = None,
    tracer: Optional[Tracer] = None,
) -> Iterator[Span]:
    """Trace one operation on the given (or global) tracer."""
    with (tracer or get_tracer()).start_span(name, kind, attributes) as span:
        yield span


def log_request(
    operation: str,
    status_code: int,
    latency_ms: float,
    tenant_id: str,
    correlation_id: str,
    replayed: bool = False,
    metrics: Optional[MetricsCollector] = None,
):
    """Record one kernel response as a metric and a structured log line."""
    (metrics or get_metrics()).record(
        "kernel_request",
        duration_ms=latency_ms,
        error=status_code >= 500,
        labels={"operation": operation, "status": str(status_code)},
    )

    log_data = {
        "event": operation,
        "status_code": status_code,
        "tenant_id": tenant_id,
        "correlation_id": correlation_id,
        "latency_ms": round(latency_ms, 2),
        "replayed": replayed,
    }
    if status_code >= 500:
        logger.warning(f"Request failed: {json.dumps(log_data, sort_keys=True)}")
    else:
        logger.info(f"Request: {json.dumps(log_data, sort_keys=True)}")


__all__ = [
    "Span",
    "SpanKind",
    "SpanStatus",
    "Trace",
    "Tracer",
    "get_tracer",
    "trace_operation",
    "MetricsBucket",
    "MetricsCollector",
    "get_metrics",
    "log_request",
]
