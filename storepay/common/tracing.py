"""OpenTelemetry setup: OTLP export, FastAPI request spans and gateway call spans."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from storepay.common.config import Settings


def setup_tracing(settings: Settings) -> None:
    """Register a tracer provider exporting to the configured OTLP HTTP collector."""

    resource = Resource.create({"service.name": settings.service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app)


def get_tracer() -> trace.Tracer:
    """Tracer for spans around outbound gateway calls."""

    return trace.get_tracer("storepay")
