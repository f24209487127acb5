"""Optional OpenTelemetry tracing, enabled by OTEL_ENABLED."""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from finquest.core.config import settings


_tracer = None
_enabled = False
_exporter = None


def setup_tracing(enabled: Optional[bool] = None, exporter_name: Optional[str] = None) -> None:
    global _tracer, _enabled, _exporter

    flag = settings.OTEL_ENABLED if enabled is None else bool(enabled)
    _enabled = flag
    if not flag:
        return

    provider = TracerProvider(resource=Resource.create({"service.name": "finquest"}))
    exporter_choice = exporter_name or os.getenv("OTEL_EXPORTER", settings.OTEL_EXPORTER)
    if exporter_choice == "memory":
        _exporter = InMemorySpanExporter()
    else:
        _exporter = ConsoleSpanExporter()

    provider.add_span_processor(SimpleSpanProcessor(_exporter))
    # Tracer comes from our own provider so repeated setup (tests) does not
    # depend on the process-wide provider being overridable.
    _tracer = provider.get_tracer("finquest")


@contextmanager
def start_span(name: str, attributes: Optional[Dict[str, object]] = None):
    if not _enabled or _tracer is None:
        yield None
        return
    span = _tracer.start_span(name)
    if attributes:
        for k, v in attributes.items():
            if v is not None:
                span.set_attribute(k, v)
    with trace.use_span(span, end_on_exit=True):
        yield span


def get_exported_spans():
    if _exporter and hasattr(_exporter, "get_finished_spans"):
        return _exporter.get_finished_spans()
    return []


def reset_exported_spans():
    if _exporter and hasattr(_exporter, "clear"):
        _exporter.clear()
