"""OpenTelemetry + Prometheus fallback wiring for the timebridge connector."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from timebridge import config

logger = logging.getLogger("timebridge.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_cycle_counter: Any | None = None
_cycle_latency_hist: Any | None = None
_item_outcome_counter: Any | None = None

_prom_enabled = False
_prom_cycle_counter: Any | None = None
_prom_cycle_latency_hist: Any | None = None
_prom_item_outcome_counter: Any | None = None


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


def _start_prometheus_fallback() -> None:
    global _prom_enabled, _prom_cycle_counter, _prom_cycle_latency_hist, _prom_item_outcome_counter

    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        _prom_cycle_counter = Counter(
            "timebridge_sync_cycles_total",
            "Count of sync cycles by direction and final status",
            ["direction", "status"],
        )
        _prom_cycle_latency_hist = Histogram(
            "timebridge_sync_cycle_duration_ms",
            "Wall-clock duration of sync cycles",
            ["direction", "status"],
        )
        _prom_item_outcome_counter = Counter(
            "timebridge_sync_items_total",
            "Per-item outcomes recorded by the sync pipelines",
            ["direction", "outcome"],
        )
        _prom_enabled = True
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _cycle_counter, _cycle_latency_hist, _item_outcome_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (TIMEBRIDGE_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "timebridge"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "timebridge",
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
    meter = metrics.get_meter("timebridge.sync")

    _cycle_counter = meter.create_counter(
        "timebridge_sync_cycles_total",
        unit="1",
        description="Count of sync cycles by direction and final status",
    )
    _cycle_latency_hist = meter.create_histogram(
        "timebridge_sync_cycle_duration_ms",
        unit="ms",
        description="Wall-clock duration of sync cycles",
    )
    _item_outcome_counter = meter.create_counter(
        "timebridge_sync_items_total",
        unit="1",
        description="Per-item outcomes recorded by the sync pipelines",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("timebridge.sync")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus_fallback()

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    for label, action in (
        ("instrumentor", lambda: app and _fastapi_instrumentor and _fastapi_instrumentor.uninstrument_app(app)),
        ("meter provider", lambda: _meter_provider is not None and _meter_provider.shutdown()),
        ("trace provider", lambda: _trace_provider is not None and _trace_provider.shutdown()),
    ):
        try:
            action()
        except Exception as exc:  # noqa: BLE001
            logger.debug("OpenTelemetry %s shutdown failed: %s", label, exc)
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


def record_cycle(direction: str, status: str, duration_ms: float) -> None:
    labels = {"direction": direction or "unknown", "status": status or "unknown"}
    if _enabled and _cycle_counter is not None:
        _cycle_counter.add(1, labels)
    if _enabled and _cycle_latency_hist is not None:
        _cycle_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_cycle_counter is not None:
        _prom_cycle_counter.labels(**_prom_labels(**labels)).inc()
    if _prom_enabled and _prom_cycle_latency_hist is not None:
        _prom_cycle_latency_hist.labels(**_prom_labels(**labels)).observe(max(0.0, float(duration_ms)))


def record_item_outcome(direction: str, outcome: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"direction": direction or "unknown", "outcome": outcome or "unknown"}
    if _enabled and _item_outcome_counter is not None:
        _item_outcome_counter.add(safe_count, labels)
    if _prom_enabled and _prom_item_outcome_counter is not None:
        _prom_item_outcome_counter.labels(**_prom_labels(**labels)).inc(safe_count)
