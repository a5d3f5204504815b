"""
OpenTelemetry tracing for plan execution.
=========================================
TracingConfig, configure_tracing(), get_tracer(), and three context-manager
helpers around the executor's instrumentation points: one span per task, one
per collaborator call, one per alternative-approach attempt.

Without configure_tracing(enabled=True) the OpenTelemetry API hands out its
no-op tracer, so the helpers cost next to nothing.

Usage:
    from reasoner.tracing import configure_tracing, TracingConfig
    configure_tracing(TracingConfig(enabled=True, otlp_endpoint="http://localhost:4317"))
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger("reasoner.tracing")

# Module-level singletons (reset between tests)
_tracer: Optional[trace.Tracer] = None
_provider: Optional[TracerProvider] = None


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "meta-reasoner"
    otlp_endpoint: Optional[str] = None   # None → ConsoleSpanExporter (dev)
    sample_rate: float = 1.0


def configure_tracing(cfg: TracingConfig, exporter=None) -> None:
    """
    Initialise the tracer. Safe to call more than once.

    ``exporter`` overrides the OTLP / console choice (tests pass an
    InMemorySpanExporter). The provider is kept module-local rather than
    installed globally, so repeated configuration takes effect.
    """
    global _tracer, _provider

    if not cfg.enabled:
        _provider = None
        _tracer = trace.get_tracer("reasoner")
        return

    resource = Resource.create({"service.name": cfg.service_name})
    provider = TracerProvider(resource=resource,
                              sampler=TraceIdRatioBased(cfg.sample_rate))

    if exporter is not None:
        provider.add_span_processor(SimpleSpanProcessor(exporter))
    elif cfg.otlp_endpoint:
        # Shipped in the "otlp" extra
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        provider.add_span_processor(BatchSpanProcessor(
            OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True)
        ))
        logger.info("OTEL tracing → %s", cfg.otlp_endpoint)
    else:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("OTEL tracing → console (dev mode)")

    _provider = provider
    _tracer = provider.get_tracer(cfg.service_name)


def shutdown_tracing() -> None:
    """Flush pending spans and fall back to the no-op tracer."""
    global _tracer, _provider
    if _provider is not None:
        _provider.shutdown()
    _provider = None
    _tracer = None


def get_tracer() -> trace.Tracer:
    """The configured tracer, or the API's no-op tracer."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer("reasoner")
    return _tracer


# ── Context managers ───────────────────────────────────────────────────────────

@contextmanager
def traced_task(task_id: str, task_type: str) -> Iterator:
    """Span for one task, from in_progress to its recorded outcome."""
    with get_tracer().start_as_current_span(f"task:{task_id}") as span:
        span.set_attribute("task.id", task_id)
        span.set_attribute("task.type", task_type)
        yield span


@contextmanager
def traced_collaborator_call(collaborator: str, operation: str) -> Iterator:
    """Span for one awaited collaborator call."""
    with get_tracer().start_as_current_span(f"collaborator:{collaborator}") as span:
        span.set_attribute("collaborator.name", collaborator)
        span.set_attribute("collaborator.operation", operation)
        yield span


@contextmanager
def traced_alternative(task_id: str, approach: str, confidence: float) -> Iterator:
    """Span for an alternative-approach attempt."""
    with get_tracer().start_as_current_span("alternative") as span:
        span.set_attribute("task.id", task_id)
        span.set_attribute("alternative.approach", approach)
        span.set_attribute("alternative.confidence", confidence)
        yield span
