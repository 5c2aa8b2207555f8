from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_NAMESPACE, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from brandtrust.core.config import Settings

if TYPE_CHECKING:
    from fastapi import FastAPI

    from brandtrust.services.repository import JobRecord

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    instrumented_app: "FastAPI | None" = None


def configure_logging(level: int = logging.INFO) -> None:
    """Install trace correlation and, unless the host already did, a root handler."""
    _install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, *, service_suffix: str | None = None) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    service_name = f"{settings.otel_service_name}-{service_suffix}" if service_suffix else settings.otel_service_name
    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: service_name,
                SERVICE_NAMESPACE: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = _build_exporter(settings, service_name=service_name)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    # push gateway and evidence adapter calls
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def setup_api_telemetry(app: "FastAPI", settings: Settings) -> TelemetryRuntime:
    runtime = setup_telemetry(settings, service_suffix="api")
    if runtime.enabled:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider, excluded_urls="healthz")
        runtime.instrumented_app = app
    return runtime


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if runtime.instrumented_app is not None:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.uninstrument_app(runtime.instrumented_app)
        runtime.instrumented_app = None
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def job_span_attributes(job: "JobRecord") -> dict[str, Any]:
    attributes: dict[str, Any] = {
        "job.id": job.id,
        "job.stage": job.stage,
        "job.attempts": job.attempts,
    }
    if job.coalesce_key:
        attributes["job.coalesce_key"] = job.coalesce_key
    return attributes


def run_span_attributes(summary: dict[str, Any]) -> dict[str, Any]:
    return {f"jobs.{key}": value for key, value in summary.items()}


def _build_exporter(settings: Settings, *, service_name: str) -> OTLPSpanExporter | None:
    endpoint = _exporter_endpoint(settings)
    if not endpoint:
        logger.info("OTel exporter endpoint not set; spans remain local-only for service=%s", service_name)
        return None

    headers = _parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def _exporter_endpoint(settings: Settings) -> str | None:
    for candidate in (
        settings.otel_exporter_otlp_endpoint,
        os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"),
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
    ):
        if candidate:
            return candidate
    return None


def _parse_headers(raw: str | None) -> dict[str, str]:
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else _ZERO_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else _ZERO_SPAN_ID
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
