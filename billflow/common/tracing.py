"""OpenTelemetry wiring: exporter setup, FastAPI request spans, task spans."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from billflow.common.config import CommonSettings


def setup_tracing(config: CommonSettings) -> None:
    """Register a tracer provider exporting over OTLP HTTP, unless tracing is off."""

    if not config.tracing_enabled:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": config.service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


@contextmanager
def task_span(task_type: str, task_key: str):
    """Span around one claim-to-finalize run; the outcome is attached by the caller."""

    tracer = trace.get_tracer("billflow.tasks")
    with tracer.start_as_current_span(f"task {task_type}") as span:
        span.set_attribute("billflow.task_type", task_type)
        span.set_attribute("billflow.task_key", task_key)
        yield span
