# telemetry.py — OpenTelemetry tracing for the AERELION core
"""
Exports spans to an OTLP collector when OTEL_EXPORTER_OTLP_ENDPOINT is set,
otherwise stays in no-op mode for development and tests.

This is distinct from telemetry_aggregator, which holds the agent and node
health view served to customers and operators.
"""
import os
import logging
from contextlib import contextmanager, nullcontext

logger = logging.getLogger("aerelion.otel")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "aerelion-core")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")


def setup_telemetry(app=None):
    """Initialise tracing and instrument FastAPI, SQLAlchemy and outbound HTTPX.

    No-op when the OTel SDK is not installed or no endpoint is configured.
    """
    if not OTLP_ENDPOINT:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        resource = Resource.create({
            RES_SVC_NAME: SERVICE_NAME,
            "service.version": SERVICE_VERSION,
            "deployment.environment": ENVIRONMENT,
        })
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
        trace.set_tracer_provider(provider)

        if app is not None:
            try:
                from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
                FastAPIInstrumentor.instrument_app(app, excluded_urls="health", tracer_provider=provider)
            except ImportError:
                logger.warning("opentelemetry-instrumentation-fastapi not installed")

        try:
            from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
            SQLAlchemyInstrumentor().instrument(tracer_provider=provider)
        except ImportError:
            logger.warning("opentelemetry-instrumentation-sqlalchemy not installed")

        # Stripe and Hostinger calls
        try:
            from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
            HTTPXClientInstrumentor().instrument(tracer_provider=provider)
        except ImportError:
            logger.warning("opentelemetry-instrumentation-httpx not installed")

        logger.info(f"OpenTelemetry initialised → {OTLP_ENDPOINT}")
        return provider

    except ImportError:
        logger.info("OpenTelemetry SDK not installed — tracing disabled")
        return None
    except Exception as e:
        logger.error(f"OpenTelemetry setup failed: {e}")
        return None


def get_tracer(name: str = "aerelion"):
    """Tracer instance, or None if OTel is not installed."""
    try:
        from opentelemetry import trace
        return trace.get_tracer(name, SERVICE_VERSION)
    except ImportError:
        return None


@contextmanager
def span(name: str, **attributes):
    """Wrap a unit of work in a span when tracing is available."""
    tracer = get_tracer()
    ctx = tracer.start_as_current_span(name) if tracer is not None else nullcontext()
    with ctx as current:
        if current is not None:
            for key, value in attributes.items():
                if value is not None:
                    current.set_attribute(f"aerelion.{key}", value)
        yield current
