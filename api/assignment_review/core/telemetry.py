from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from assignment_review.core.config import Settings

PLAIN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
CORRELATED_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
# Health checks would otherwise dominate the trace volume.
UNTRACED_PATHS = "healthz"

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()
_correlation_installed = False


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None = None


def configure_logging(settings: Settings) -> None:
    """Install the root handler; trace ids appear in log lines only when correlation is on."""

    correlated = settings.otel_enabled and settings.otel_log_correlation
    if correlated:
        _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=logging.INFO, format=CORRELATED_LOG_FORMAT if correlated else PLAIN_LOG_FORMAT)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        runtime = TelemetryRuntime(enabled=False)
    else:
        provider = _build_provider(settings)
        trace.set_tracer_provider(provider)
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls=UNTRACED_PATHS)
        _HTTPX_INSTRUMENTOR.instrument(tracer_provider=provider)
        runtime = TelemetryRuntime(enabled=True, provider=provider)
    app.state.telemetry = runtime
    return runtime


def shutdown_api_telemetry(app: FastAPI) -> None:
    runtime: TelemetryRuntime | None = getattr(app.state, "telemetry", None)
    if runtime is None or not runtime.enabled:
        return
    app.state.telemetry = TelemetryRuntime(enabled=False)
    FastAPIInstrumentor.uninstrument_app(app)
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _build_provider(settings: Settings) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    endpoint = _exporter_endpoint(settings)
    if endpoint:
        headers = _parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logging.getLogger(__name__).info(
            "review spans stay in-process; no OTLP endpoint configured service=%s",
            settings.otel_service_name,
        )
    return provider


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
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
