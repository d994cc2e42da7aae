"""
OpenTelemetry tracing setup.

The queue only creates spans through the OpenTelemetry API. Spans go
nowhere until a tracer provider is installed, either by the host
application or by setup_tracing when an OTLP endpoint is configured.
"""

from opentelemetry import trace
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer
from sqlalchemy.ext.asyncio import AsyncEngine

from leasequeue import __version__
from leasequeue.config import Settings, get_settings


def setup_tracing(
    settings: Settings | None = None,
    enable_console_export: bool = False,
    install: bool = True,
) -> TracerProvider:
    """
    Set up an OpenTelemetry tracer provider.

    Spans are exported over OTLP only when an endpoint is configured.

    Args:
        settings: Settings providing the service name and OTLP endpoint.
            Defaults to the cached environment settings.
        enable_console_export: If True, also export spans to console.
        install: If True, install the provider as the global one.

    Returns:
        TracerProvider: The configured provider.
    """
    settings = settings or get_settings()

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
        }
    )

    provider = TracerProvider(resource=resource)

    if settings.otel_exporter_otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )

        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

    # Optionally add console exporter for debugging
    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    if install:
        trace.set_tracer_provider(provider)

    return provider


def instrument_sqlalchemy(engine: AsyncEngine) -> None:
    """
    Instrument a SQLAlchemy engine with OpenTelemetry.

    Args:
        engine: The async engine; its sync engine carries the event hooks.
    """
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer() -> Tracer:
    """
    Get the queue's tracer from the current global provider.

    Returns:
        Tracer: The tracer instance.
    """
    return trace.get_tracer("leasequeue", __version__)
