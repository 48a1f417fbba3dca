"""OpenTelemetry + Prometheus fallback wiring for the session tracker.

Every metric is declared once in ``_METRICS``; the OTel meter and the
Prometheus fallback both build their instruments from that table.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI

from session_tracker import config

logger = logging.getLogger("tracker.observability")


@dataclass(frozen=True)
class _MetricSpec:
    name: str
    kind: str  # "counter" | "histogram"
    unit: str
    description: str
    labels: tuple[str, ...]


INGESTION_EVENTS = "tracker_ingestion_events_total"
INGESTION_LATENCY = "tracker_ingestion_latency_ms"
PARSER_FAILURES = "tracker_parser_failures_total"
TOOL_CALLS = "tracker_tool_calls_total"
TOKENS = "tracker_tokens_total"
COST = "tracker_cost_usd_total"

_METRICS = (
    _MetricSpec(INGESTION_EVENTS, "counter", "1", "Count of transcript ingestion operations", ("entity", "result", "project")),
    _MetricSpec(INGESTION_LATENCY, "histogram", "ms", "Latency for transcript parse and upsert operations", ("entity", "result", "project")),
    _MetricSpec(PARSER_FAILURES, "counter", "1", "Count of transcripts with skipped records", ("parser", "project")),
    _MetricSpec(TOOL_CALLS, "counter", "1", "Tool call outcomes observed while ingesting sessions", ("tool", "status", "project")),
    _MetricSpec(TOKENS, "counter", "1", "Token totals by model", ("model", "direction", "project")),
    _MetricSpec(COST, "counter", "usd", "Cost totals by model", ("model", "project")),
)

_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None
_otel_instruments: dict[str, Any] = {}

_prom_enabled = False
_prom_instruments: dict[str, Any] = {}


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    endpoint = endpoint.rstrip("/")
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _clean_labels(labels: dict[str, Any]) -> dict[str, str]:
    return {key: (str(value or "")).strip() or "unknown" for key, value in labels.items()}


def _emit(name: str, value: float, labels: dict[str, Any]) -> None:
    """Send one measurement to whichever backends are live."""
    clean = _clean_labels(labels)
    instrument = _otel_instruments.get(name) if _enabled else None
    if instrument is not None:
        if hasattr(instrument, "record"):
            instrument.record(value, clean)
        else:
            instrument.add(value, clean)
    prom = _prom_instruments.get(name) if _prom_enabled else None
    if prom is not None:
        bound = prom.labels(**clean)
        if hasattr(bound, "observe"):
            bound.observe(value)
        else:
            bound.inc(value)


def _start_prometheus_fallback() -> None:
    global _prom_enabled

    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        for spec in _METRICS:
            factory = Histogram if spec.kind == "histogram" else Counter
            _prom_instruments[spec.name] = factory(spec.name, spec.description, list(spec.labels))
        _prom_enabled = True
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (SESSION_TRACKER_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    service_name = config.OTEL_SERVICE_NAME or "session-tracker"
    resource = Resource.create({"service.name": service_name, "service.namespace": "session-tracker"})

    _trace_provider = TracerProvider(resource=resource)
    _trace_provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None)
        )
    )
    trace.set_tracer_provider(_trace_provider)
    _tracer = trace.get_tracer("session_tracker")

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None)
    )
    _meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(_meter_provider)
    meter = metrics.get_meter("session_tracker")
    for spec in _METRICS:
        create = meter.create_histogram if spec.kind == "histogram" else meter.create_counter
        _otel_instruments[spec.name] = create(spec.name, unit=spec.unit, description=spec.description)

    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True
    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus_fallback()

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    for label, action in (
        ("FastAPI instrumentation", lambda: app and _fastapi_instrumentor and _fastapi_instrumentor.uninstrument_app(app)),
        ("meter provider", lambda: _meter_provider is not None and _meter_provider.shutdown()),
        ("trace provider", lambda: _trace_provider is not None and _trace_provider.shutdown()),
    ):
        try:
            action()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Failed to shut down %s: %s", label, exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def record_ingestion(entity: str, result: str, duration_ms: float, *, project: str) -> None:
    labels = {"entity": entity, "result": result, "project": project}
    _emit(INGESTION_EVENTS, 1, labels)
    _emit(INGESTION_LATENCY, max(0.0, float(duration_ms)), labels)


def record_parser_failure(parser: str, *, project: str) -> None:
    _emit(PARSER_FAILURES, 1, {"parser": parser, "project": project})


def record_tool_result(tool: str, status: str, *, project: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count:
        _emit(TOOL_CALLS, safe_count, {"tool": tool, "status": status, "project": project})


def record_token_cost(
    *,
    project: str,
    model: str,
    token_input: int,
    token_output: int,
    cost_usd: float,
) -> None:
    for direction, tokens in (("input", token_input), ("output", token_output)):
        if int(tokens) > 0:
            _emit(TOKENS, int(tokens), {"model": model, "direction": direction, "project": project})
    if cost_usd > 0:
        _emit(COST, float(cost_usd), {"model": model, "project": project})


def snapshot() -> dict[str, bool]:
    return {"otelEnabled": _enabled, "prometheusEnabled": _prom_enabled}
