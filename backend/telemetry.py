# telemetry.py — Optional OpenTelemetry tracing for the issue tracker API
"""
Traces HTTP requests and database calls when OTEL_EXPORTER_OTLP_ENDPOINT is
set and the ``telemetry`` extra is installed. Otherwise tracing stays off.
"""
import os
import logging

logger = logging.getLogger("issue-tracker.telemetry")


def setup_telemetry(app=None, engine=None):
    """Instrument the app and engine; returns the tracer provider, or None when disabled"""
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
    if not endpoint:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
    except ImportError:
        logger.warning("OpenTelemetry packages not installed; install the 'telemetry' extra")
        return None

    provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME", "issue-tracker-api"),
        "deployment.environment": os.getenv("ENVIRONMENT", "development"),
    }))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    trace.set_tracer_provider(provider)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health", tracer_provider=provider)
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=provider)

    logger.info(f"OpenTelemetry tracing → {endpoint}")
    return provider
