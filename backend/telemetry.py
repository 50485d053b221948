"""
OpenTelemetry setup for the realtime orchestration service.
Spans are optional: without the OpenTelemetry packages every helper degrades to a no-op.
"""

import contextlib
import os
import structlog

logger = structlog.get_logger()

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "realtime-agent-orchestrator")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


def configure_telemetry(app=None):
    """
    Install a TracerProvider, with an OTLP exporter when an endpoint is configured.

    Args:
        app: FastAPI app instance to instrument
    """
    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider(resource=Resource.create({
            "service.name": SERVICE_NAME,
            "service.version": SERVICE_VERSION,
            "deployment.environment": ENVIRONMENT,
        }))

        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        if otlp_endpoint:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            from opentelemetry.sdk.trace.export import BatchSpanProcessor

            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
            logger.info("otel_otlp_configured", endpoint=otlp_endpoint)

        trace.set_tracer_provider(provider)

        if app:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
            FastAPIInstrumentor.instrument_app(app)
            logger.info("otel_fastapi_instrumented")

        logger.info("otel_configured", service=SERVICE_NAME, environment=ENVIRONMENT)

    except ImportError as e:
        logger.warning("otel_not_available", error=str(e))
    except Exception as e:
        logger.error("otel_configuration_failed", error=str(e))


def get_tracer(name: str = SERVICE_NAME):
    try:
        from opentelemetry import trace
        return trace.get_tracer(name)
    except ImportError:
        return None


def traced_span(tracer, span_name: str):
    """Span context manager, or a no-op one if tracing is unavailable."""
    if tracer is None:
        return contextlib.nullcontext()
    return tracer.start_as_current_span(span_name)
