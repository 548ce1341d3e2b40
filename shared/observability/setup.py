import logging

import structlog
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

# OpenTelemetry
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from shared.config.settings import OrderServiceSettings

_TRACING_INITIALISED = False


# 1. Structlog Processor: Injects Trace/Span IDs into every log line
def add_otel_ids(logger, log_method, event_dict):
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = trace.format_trace_id(ctx.trace_id)
        event_dict["span_id"] = trace.format_span_id(ctx.span_id)
    return event_dict


# 2. Configure Structlog for JSON output
def configure_logging(level: str = "INFO"):
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_otel_ids,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# 3. Configure OpenTelemetry Tracing (process-wide, done once)
def configure_tracing(service_name: str, otlp_endpoint: str):
    global _TRACING_INITIALISED
    if _TRACING_INITIALISED:
        return

    resource = Resource.create({SERVICE_NAME: service_name})
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    # Outgoing event-sink calls become child spans of the relay pass
    HTTPXClientInstrumentor().instrument()
    _TRACING_INITIALISED = True


# 4. Configure Prometheus Metrics
def configure_metrics(app: FastAPI):
    # HTTP latency / status codes, exposed at /metrics
    Instrumentator().instrument(app).expose(app, include_in_schema=False)


# --- THE MASTER SETUP FUNCTION ---
def setup_observability(app: FastAPI, service_name: str, settings: OrderServiceSettings):
    """
    Bootstraps Logging, Tracing, and Metrics for a FastAPI app.
    Tracing and HTTP metrics are switched by settings so tests can build
    as many apps as they like.
    """
    configure_logging(settings.log_level)
    if settings.telemetry_enabled:
        configure_tracing(service_name, settings.otlp_endpoint)
        FastAPIInstrumentor.instrument_app(app)
    if settings.metrics_enabled:
        configure_metrics(app)
