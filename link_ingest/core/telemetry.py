from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
import os
from typing import TYPE_CHECKING, Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Span

from link_ingest.core.config import Settings

if TYPE_CHECKING:
    from link_ingest.services.models import IngestionJob

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()

tracer = trace.get_tracer("link_ingest")


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    component: str


class TraceContextFilter(logging.Filter):
    """Stamps every record with the active span's ids so log lines join traces."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = _EMPTY_TRACE_ID
            record.span_id = _EMPTY_SPAN_ID
        return True


def configure_logging(level: int | str = logging.INFO) -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in root.handlers:
        if not any(isinstance(existing, TraceContextFilter) for existing in handler.filters):
            handler.addFilter(TraceContextFilter())


def setup_worker_telemetry(settings: Settings) -> TelemetryRuntime:
    runtime = _start(settings, component="worker")
    if runtime.enabled:
        # Strategy fetches become child spans of worker.process_job.
        _HTTPX_INSTRUMENTOR.instrument(tracer_provider=runtime.provider)
    return runtime


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.enabled:
        _HTTPX_INSTRUMENTOR.uninstrument()
    _stop(runtime)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    runtime = _start(settings, component="api")
    if runtime.enabled:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider)
    return runtime


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if runtime.enabled:
        FastAPIInstrumentor.uninstrument_app(app)
    _stop(runtime)


@contextmanager
def job_span(job: IngestionJob) -> Iterator[Span]:
    with tracer.start_as_current_span("worker.process_job") as span:
        span.set_attribute("job.id", job.id)
        span.set_attribute("job.type", job.job_type)
        span.set_attribute("job.attempt", job.attempts)
        span.set_attribute("job.depth", job.depth)
        span.set_attribute("job.source_host", job.source_host or "")
        span.set_attribute("creator_profile.id", job.creator_profile_id)
        yield span


def _start(settings: Settings, *, component: str) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None, component=component)
    if settings.otel_log_correlation:
        configure_logging()

    service_name = f"{settings.otel_service_name}-{component}"
    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name, DEPLOYMENT_ENVIRONMENT: settings.environment}),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if endpoint:
        headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logging.getLogger(__name__).info("otel exporter endpoint not set; spans stay local service=%s", service_name)
    trace.set_tracer_provider(provider)
    return TelemetryRuntime(enabled=True, provider=provider, component=component)


def _stop(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    runtime.provider.force_flush()
    runtime.provider.shutdown()


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without ``=`` are ignored."""
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers
