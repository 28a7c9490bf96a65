# telemetry.py — Optional OpenTelemetry tracing for the Berth API
"""
Traces inbound requests, SQLAlchemy statements and outbound agent calls
(httpx). Exports to an OTLP collector when OTEL_EXPORTER_OTLP_ENDPOINT is
set; otherwise nothing is installed and every call here is a no-op.
The SDK ships as the ``telemetry`` extra.
"""
import os
import logging

logger = logging.getLogger("berth.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "berth-api")
SERVICE_VERSION = "1.0.0"


def _instrument(label: str, instrument) -> None:
    try:
        instrument()
        logger.info(f"{label} instrumented with OpenTelemetry")
    except ImportError:
        logger.warning(f"OpenTelemetry instrumentation for {label} not installed")


def setup_telemetry(app=None, engine=None, environment: str = "development"):
    """Install a tracer provider and instrument FastAPI, SQLAlchemy and httpx."""
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
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
        "deployment.environment": environment,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    trace.set_tracer_provider(provider)

    if app is not None:
        def _fastapi():
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
            # agent event sockets and health probes would drown real traffic
            FastAPIInstrumentor.instrument_app(app, excluded_urls="health,ws/", tracer_provider=provider)
        _instrument("FastAPI", _fastapi)

    def _sqlalchemy():
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        kwargs = {"tracer_provider": provider}
        if engine is not None:
            kwargs["engine"] = engine.sync_engine
        SQLAlchemyInstrumentor().instrument(**kwargs)
    _instrument("SQLAlchemy", _sqlalchemy)

    def _httpx():
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
        HTTPXClientInstrumentor().instrument(tracer_provider=provider)
    _instrument("httpx", _httpx)

    logger.info(f"OpenTelemetry initialised, exporting to {endpoint}")
    return provider

