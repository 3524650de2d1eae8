"""OpenTelemetry + Prometheus fallback wiring for the continuation engine."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from continuum import config

logger = logging.getLogger("continuum.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_scan_counter: Any | None = None
_scan_latency_hist: Any | None = None
_scan_failure_counter: Any | None = None
_resolution_counter: Any | None = None
_resolution_latency_hist: Any | None = None
_cache_event_counter: Any | None = None

_prom_enabled = False
_prom_scan_counter: Any | None = None
_prom_scan_latency_hist: Any | None = None
_prom_scan_failure_counter: Any | None = None
_prom_resolution_counter: Any | None = None
_prom_resolution_latency_hist: Any | None = None
_prom_cache_event_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _prom_labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def _start_prometheus() -> None:
    global _prom_enabled
    global _prom_scan_counter, _prom_scan_latency_hist, _prom_scan_failure_counter
    global _prom_resolution_counter, _prom_resolution_latency_hist, _prom_cache_event_counter

    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        _prom_scan_counter = Counter(
            "continuum_scans_total",
            "Count of transcript scan operations",
            ["mode", "result"],
        )
        _prom_scan_latency_hist = Histogram(
            "continuum_scan_latency_ms",
            "Latency of full and partial transcript scans",
            ["mode", "result"],
        )
        _prom_scan_failure_counter = Counter(
            "continuum_scan_failures_total",
            "Transcripts that could not be scanned",
            ["stage"],
        )
        _prom_resolution_counter = Counter(
            "continuum_resolutions_total",
            "Chain resolution passes",
            ["result"],
        )
        _prom_resolution_latency_hist = Histogram(
            "continuum_resolution_latency_ms",
            "Chain resolution latency",
            ["result"],
        )
        _prom_cache_event_counter = Counter(
            "continuum_cache_events_total",
            "Continuation cache hits, misses and invalidations",
            ["event"],
        )
        _prom_enabled = True
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _scan_counter, _scan_latency_hist, _scan_failure_counter
    global _resolution_counter, _resolution_latency_hist, _cache_event_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CONTINUUM_OTEL_ENABLED=false)")
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

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "continuum-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "continuum",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("continuum.backend")

    _scan_counter = meter.create_counter(
        "continuum_scans_total",
        unit="1",
        description="Count of transcript scan operations",
    )
    _scan_latency_hist = meter.create_histogram(
        "continuum_scan_latency_ms",
        unit="ms",
        description="Latency of full and partial transcript scans",
    )
    _scan_failure_counter = meter.create_counter(
        "continuum_scan_failures_total",
        unit="1",
        description="Transcripts that could not be scanned",
    )
    _resolution_counter = meter.create_counter(
        "continuum_resolutions_total",
        unit="1",
        description="Chain resolution passes",
    )
    _resolution_latency_hist = meter.create_histogram(
        "continuum_resolution_latency_ms",
        unit="ms",
        description="Chain resolution latency",
    )
    _cache_event_counter = meter.create_counter(
        "continuum_cache_events_total",
        unit="1",
        description="Continuation cache hits, misses and invalidations",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("continuum.backend")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus()

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
        if _meter_provider is not None:
            _meter_provider.shutdown()
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Telemetry shutdown incomplete: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_scan(mode: str, result: str, duration_ms: float, *, count: int = 1) -> None:
    labels = {"mode": mode or "unknown", "result": result or "unknown"}
    safe_count = max(0, int(count))
    if _enabled and _scan_counter is not None and safe_count:
        _scan_counter.add(safe_count, labels)
    if _enabled and _scan_latency_hist is not None:
        _scan_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_scan_counter is not None and safe_count:
        _prom_scan_counter.labels(**_prom_labels(mode=mode, result=result)).inc(safe_count)
    if _prom_enabled and _prom_scan_latency_hist is not None:
        _prom_scan_latency_hist.labels(**_prom_labels(mode=mode, result=result)).observe(
            max(0.0, float(duration_ms))
        )


def record_scan_failure(stage: str) -> None:
    if _enabled and _scan_failure_counter is not None:
        _scan_failure_counter.add(1, {"stage": stage or "unknown"})
    if _prom_enabled and _prom_scan_failure_counter is not None:
        _prom_scan_failure_counter.labels(**_prom_labels(stage=stage)).inc()


def record_resolution(result: str, duration_ms: float) -> None:
    labels = {"result": result or "unknown"}
    if _enabled and _resolution_counter is not None:
        _resolution_counter.add(1, labels)
    if _enabled and _resolution_latency_hist is not None:
        _resolution_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_resolution_counter is not None:
        _prom_resolution_counter.labels(**_prom_labels(result=result)).inc()
    if _prom_enabled and _prom_resolution_latency_hist is not None:
        _prom_resolution_latency_hist.labels(**_prom_labels(result=result)).observe(
            max(0.0, float(duration_ms))
        )


def record_cache_event(event: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    if _enabled and _cache_event_counter is not None:
        _cache_event_counter.add(safe_count, {"event": event or "unknown"})
    if _prom_enabled and _prom_cache_event_counter is not None:
        _prom_cache_event_counter.labels(**_prom_labels(event=event)).inc(safe_count)
