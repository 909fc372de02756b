from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import logging
import os
from typing import Any
from urllib.parse import unquote

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_NAMESPACE, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

from ingest.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
# Job inputs copied onto the job span when present.
JOB_SPAN_INPUTS = ("source_key", "run_id", "url")

_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16
_default_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None = None
    app: FastAPI | None = None


def configure_logging(level: str = "INFO") -> None:
    """Install trace-id correlation and a root handler if none exists yet."""
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def setup_telemetry(settings: Settings, app: FastAPI | None = None) -> TelemetryRuntime:
    """Build the tracer provider for a CLI invocation or the operations API.

    Outbound httpx calls (probe fetches, snapshot uploads) are always
    instrumented; the FastAPI app is instrumented only when one is passed.
    """
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                SERVICE_NAMESPACE: "ingest",
                DEPLOYMENT_ENVIRONMENT: settings.environment,
                "ingest.snapshot_mode": settings.snapshot_mode,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    if not _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.instrument(tracer_provider=provider)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls="healthz")
    return TelemetryRuntime(enabled=True, provider=provider, app=app)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
        runtime.app = None
    if _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()
        runtime.provider = None
    runtime.enabled = False


@contextmanager
def job_span(kind: str, inputs: dict[str, Any]) -> Iterator[Span]:
    """Open the root span of one job; failures are recorded on it and re-raised."""
    with tracer.start_as_current_span(f"ingest.job.{kind}", record_exception=False) as span:
        span.set_attribute("ingest.job.kind", kind)
        for name in JOB_SPAN_INPUTS:
            value = inputs.get(name)
            if isinstance(value, str) and value:
                span.set_attribute(f"ingest.{name}", value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
            raise


def _resolve_endpoint(settings: Settings) -> str | None:
    for candidate in (
        settings.otel_exporter_otlp_endpoint,
        os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"),
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
    ):
        if candidate:
            return candidate
    return None


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = _resolve_endpoint(settings)
    if endpoint is None:
        logging.getLogger(__name__).info(
            "otel exporter disabled service=%s reason=no_endpoint", settings.otel_service_name
        )
        return None
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse the OTLP `key=value,key2=value2` header list (values may be percent-encoded)."""
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): unquote(value.strip()) for key, sep, value in pairs if sep and key.strip()}


def _current_trace_ids() -> tuple[str, str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return _EMPTY_TRACE_ID, _EMPTY_SPAN_ID
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def correlated_record(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = _default_record_factory(*args, **kwargs)
        record.trace_id, record.span_id = _current_trace_ids()
        return record

    logging.setLogRecordFactory(correlated_record)
    _correlation_installed = True
