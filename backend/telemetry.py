# telemetry.py — OpenTelemetry tracing for the Kanban API
"""
Exports traces to an OTLP collector when OTEL_EXPORTER_OTLP_ENDPOINT is set.
Without an endpoint (development, tests) nothing is instrumented.

The OpenTelemetry packages live in the ``telemetry`` extra, so a missing
SDK only disables tracing; it never stops the API from starting.
"""
import os
import logging

logger = logging.getLogger("kanban.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "kanban-api")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")

# Health checks and the websocket upgrade are not worth a span each
EXCLUDED_URLS = "health,ws"


def setup_telemetry(app=None, endpoint: str = None):
    """Register a tracer provider and instrument FastAPI and SQLAlchemy.

    Returns the provider, or None when tracing stays off.
    """
    endpoint = endpoint if endpoint is not None else OTLP_ENDPOINT
    if not endpoint:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.info("OpenTelemetry SDK not installed, tracing disabled")
        return None

    resource = Resource.create({
        RES_SVC_NAME: SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": ENVIRONMENT,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    trace.set_tracer_provider(provider)

    if app is not None:
        try:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
            FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS, tracer_provider=provider)
            logger.info("FastAPI instrumented with OpenTelemetry")
        except ImportError:
            logger.warning("opentelemetry-instrumentation-fastapi not installed")

    try:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from database import engine
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=provider)
        logger.info("SQLAlchemy instrumented with OpenTelemetry")
    except ImportError:
        logger.warning("opentelemetry-instrumentation-sqlalchemy not installed")

    logger.info(f"OpenTelemetry initialised, exporting to {endpoint}")
    return provider
