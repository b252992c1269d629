from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import Any, Protocol

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_NAMESPACE, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16

logger = logging.getLogger(__name__)


class TelemetrySettings(Protocol):
    environment: str
    otel_enabled: bool
    otel_service_name: str
    otel_exporter_otlp_endpoint: str | None
    otel_exporter_otlp_headers: str | None
    otel_trace_sample_ratio: float
    otel_log_correlation: bool


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None = None
    instrumentors: list[Any] = field(default_factory=list)

    def shutdown(self) -> None:
        for instrumentor in reversed(self.instrumentors):
            instrumentor.uninstrument()
        self.instrumentors.clear()
        if self.provider is not None:
            self.provider.force_flush()
            self.provider.shutdown()


class TraceContextFilter(logging.Filter):
    """Stamps the active span's ids on each record so log lines join up with traces."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = _EMPTY_TRACE_ID
            record.span_id = _EMPTY_SPAN_ID
        return True


def configure_logging(level: int = logging.INFO) -> None:
    root = logging.getLogger()
    if any(isinstance(existing, TraceContextFilter) for handler in root.handlers for existing in handler.filters):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(TraceContextFilter())
    root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > level:
        root.setLevel(level)


def setup_api_telemetry(app: FastAPI, settings: TelemetrySettings) -> TelemetryRuntime:
    runtime = _start_tracing(settings)
    if runtime.provider is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider)
    return runtime


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if runtime.enabled:
        FastAPIInstrumentor.uninstrument_app(app)
    runtime.shutdown()


def setup_worker_telemetry(settings: TelemetrySettings) -> TelemetryRuntime:
    runtime = _start_tracing(settings)
    if runtime.provider is not None:
        instrumentor = HTTPXClientInstrumentor()
        instrumentor.instrument(tracer_provider=runtime.provider)
        runtime.instrumentors.append(instrumentor)
    return runtime


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    runtime.shutdown()


def _start_tracing(settings: TelemetrySettings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False)

    if settings.otel_log_correlation:
        configure_logging()

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            SERVICE_NAMESPACE: "storyflow",
            DEPLOYMENT_ENVIRONMENT: settings.environment,
        }
    )
    provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)))
    exporter = _otlp_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return TelemetryRuntime(enabled=True, provider=provider)


def _otlp_exporter(settings: TelemetrySettings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("otel exporter disabled service=%s reason=no_endpoint", settings.otel_service_name)
        return None

    headers = _header_pairs(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def _header_pairs(raw: str | None) -> dict[str, str]:
    """Parse the OTLP `key=value,key=value` header list, skipping malformed entries."""
    pairs: dict[str, str] = {}
    for chunk in (raw or "").split(","):
        key, sep, value = chunk.partition("=")
        if sep and key.strip():
            pairs[key.strip()] = value.strip()
    return pairs
