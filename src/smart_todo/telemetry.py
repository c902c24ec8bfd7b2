import atexit
import logging
import os
from importlib.metadata import PackageNotFoundError, version
from typing import Any

from opentelemetry import _logs, metrics, trace
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor


logger = logging.getLogger(__name__)


def is_telemetry_disabled() -> bool:
    return os.environ.get("OTEL_SDK_DISABLED", "").lower() == "true"


def _service_version() -> str:
    try:
        return version("smart-todo")
    except PackageNotFoundError:
        return "0.0.0"


def setup_telemetry(
    service_name: str,
    otlp_endpoint: str,
    environment: str = "development",
) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize traces, metrics and logs exported over OTLP/HTTP.

    Sets up:
    1. Trace provider with OTLP exporter
    2. Meter provider with OTLP exporter
    3. Log provider with OTLP exporter, attached to the root logger
    4. Auto-instrumentation for httpx (the model API calls) and logging
       (trace_id/span_id on every record)

    GenAI spans and metrics for the extraction call are emitted by
    ``services/llm.py``. Database spans are added per engine by
    :func:`instrument_engine`.

    Args:
        service_name: Service identifier for all telemetry
        otlp_endpoint: OTLP collector endpoint (e.g., "http://otel-collector:4318")
        environment: Value for ``deployment.environment``

    Returns:
        Tuple of (tracer, meter) for custom instrumentation
    """
    if is_telemetry_disabled():
        logger.info("OpenTelemetry disabled")
        return trace.get_tracer(service_name), metrics.get_meter(service_name)

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": _service_version(),
            "deployment.environment": environment,
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{otlp_endpoint}/v1/traces"))
    )
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=f"{otlp_endpoint}/v1/metrics"),
        export_interval_millis=10000,
    )
    metric_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(metric_provider)

    log_provider = LoggerProvider(resource=resource)
    log_provider.add_log_record_processor(
        BatchLogRecordProcessor(OTLPLogExporter(endpoint=f"{otlp_endpoint}/v1/logs"))
    )
    _logs.set_logger_provider(log_provider)
    logging.getLogger().addHandler(LoggingHandler(level=logging.INFO, logger_provider=log_provider))

    # Flush buffered telemetry on exit
    atexit.register(trace_provider.shutdown)
    atexit.register(metric_provider.shutdown)
    atexit.register(log_provider.shutdown)

    HTTPXClientInstrumentor().instrument()
    LoggingInstrumentor().instrument(set_logging_format=True)

    logger.info(
        "OpenTelemetry initialized",
        extra={"service": service_name, "endpoint": otlp_endpoint},
    )

    return trace.get_tracer(service_name), metrics.get_meter(service_name)


def instrument_engine(engine: Any) -> None:
    """Trace every query issued through ``engine`` (an ``AsyncEngine``)."""
    if is_telemetry_disabled():
        return
    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def instrument_fastapi(app: Any) -> None:
    """Instrument FastAPI app after creation.

    Creates spans for every HTTP request with method, path, status code, duration.
    Must be called AFTER the FastAPI app is created.
    """
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

    FastAPIInstrumentor.instrument_app(
        app,
        excluded_urls="health",
        exclude_spans=["receive", "send"],
    )
