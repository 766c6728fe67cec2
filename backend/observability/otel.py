"""OpenTelemetry + Prometheus fallback wiring for the Recall backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from backend import config

logger = logging.getLogger("recall.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_recompute_counter: Any | None = None
_recompute_latency_hist: Any | None = None
_unit_changes_counter: Any | None = None
_override_counter: Any | None = None

_prom_enabled = False
_prom_recompute_counter: Any | None = None
_prom_recompute_latency_hist: Any | None = None
_prom_unit_changes_counter: Any | None = None
_prom_override_counter: Any | None = None


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


def _labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def _start_prometheus() -> None:
    global _prom_enabled
    global _prom_recompute_counter, _prom_recompute_latency_hist
    global _prom_unit_changes_counter, _prom_override_counter
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        _prom_recompute_counter = Counter(
            "recall_recompute_runs_total",
            "Count of work unit recompute runs",
            ["result"],
        )
        _prom_recompute_latency_hist = Histogram(
            "recall_recompute_latency_ms",
            "Latency of work unit recompute runs",
            ["result"],
        )
        _prom_unit_changes_counter = Counter(
            "recall_work_unit_changes_total",
            "Work units created, updated or deleted by recompute",
            ["change"],
        )
        _prom_override_counter = Counter(
            "recall_manual_overrides_total",
            "Manual work unit membership edits",
            ["action", "result"],
        )
        _prom_enabled = True
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except (ImportError, OSError, ValueError) as exc:
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _recompute_counter, _recompute_latency_hist, _unit_changes_counter, _override_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (RECALL_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "recall-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "recall",
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
    meter = metrics.get_meter("recall.backend")

    _recompute_counter = meter.create_counter(
        "recall_recompute_runs_total",
        unit="1",
        description="Count of work unit recompute runs",
    )
    _recompute_latency_hist = meter.create_histogram(
        "recall_recompute_latency_ms",
        unit="ms",
        description="Latency of work unit recompute runs",
    )
    _unit_changes_counter = meter.create_counter(
        "recall_work_unit_changes_total",
        unit="1",
        description="Work units created, updated or deleted by recompute",
    )
    _override_counter = meter.create_counter(
        "recall_manual_overrides_total",
        unit="1",
        description="Manual work unit membership edits",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("recall.backend")
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
        logger.warning("Observability shutdown incomplete: %s", exc)
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


def record_recompute(
    result: str,
    duration_ms: float,
    *,
    created: int = 0,
    updated: int = 0,
    deleted: int = 0,
) -> None:
    labels = _labels(result=result)
    latency = max(0.0, float(duration_ms))
    changes = {"created": created, "updated": updated, "deleted": deleted}
    if _enabled and _recompute_counter is not None:
        _recompute_counter.add(1, labels)
    if _enabled and _recompute_latency_hist is not None:
        _recompute_latency_hist.record(latency, labels)
    if _enabled and _unit_changes_counter is not None:
        for change, count in changes.items():
            if count > 0:
                _unit_changes_counter.add(int(count), {"change": change})
    if _prom_enabled and _prom_recompute_counter is not None:
        _prom_recompute_counter.labels(**labels).inc()
    if _prom_enabled and _prom_recompute_latency_hist is not None:
        _prom_recompute_latency_hist.labels(**labels).observe(latency)
    if _prom_enabled and _prom_unit_changes_counter is not None:
        for change, count in changes.items():
            if count > 0:
                _prom_unit_changes_counter.labels(change=change).inc(int(count))


def record_override(action: str, result: str) -> None:
    labels = _labels(action=action, result=result)
    if _enabled and _override_counter is not None:
        _override_counter.add(1, labels)
    if _prom_enabled and _prom_override_counter is not None:
        _prom_override_counter.labels(**labels).inc()
