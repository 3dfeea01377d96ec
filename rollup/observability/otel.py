"""OpenTelemetry + Prometheus fallback wiring for the rollup service."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from rollup import config

logger = logging.getLogger("rollup.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_change_events_counter: Any | None = None
_recompute_latency_hist: Any | None = None
_cascade_plans_counter: Any | None = None

_prom_enabled = False
_prom_change_events_counter: Any | None = None
_prom_recompute_latency_hist: Any | None = None
_prom_cascade_plans_counter: Any | None = None


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


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _change_events_counter, _recompute_latency_hist, _cascade_plans_counter
    global _prom_enabled, _prom_change_events_counter, _prom_recompute_latency_hist, _prom_cascade_plans_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (ROLLUP_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "rollup-service"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "rollup",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("rollup.service")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("rollup.service")

    _change_events_counter = meter.create_counter(
        "rollup_change_events_total",
        unit="1",
        description="Test case change events handled by the dispatcher",
    )
    _recompute_latency_hist = meter.create_histogram(
        "rollup_recompute_latency_ms",
        unit="ms",
        description="Latency of project stats recomputation",
    )
    _cascade_plans_counter = meter.create_counter(
        "rollup_cascade_plans_updated_total",
        unit="1",
        description="Test plans rewritten after a test case deletion",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_change_events_counter = Counter(
                "rollup_change_events_total",
                "Test case change events handled by the dispatcher",
                ["kind", "outcome"],
            )
            _prom_recompute_latency_hist = Histogram(
                "rollup_recompute_latency_ms",
                "Latency of project stats recomputation",
                ["result"],
            )
            _prom_cascade_plans_counter = Counter(
                "rollup_cascade_plans_updated_total",
                "Test plans rewritten after a test case deletion",
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except OSError as exc:
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    if app and _fastapi_instrumentor:
        _fastapi_instrumentor.uninstrument_app(app)
    if _meter_provider is not None:
        _meter_provider.shutdown()
    if _trace_provider is not None:
        _trace_provider.shutdown()
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


def record_change_event(kind: str, outcome: str) -> None:
    labels = {"kind": kind or "unknown", "outcome": outcome or "unknown"}
    if _enabled and _change_events_counter is not None:
        _change_events_counter.add(1, labels)
    if _prom_enabled and _prom_change_events_counter is not None:
        _prom_change_events_counter.labels(**labels).inc()


def record_recompute(result: str, duration_ms: float) -> None:
    labels = {"result": result or "unknown"}
    if _enabled and _recompute_latency_hist is not None:
        _recompute_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_recompute_latency_hist is not None:
        _prom_recompute_latency_hist.labels(**labels).observe(max(0.0, float(duration_ms)))


def record_cascade(plans_updated: int) -> None:
    count = max(0, int(plans_updated))
    if count == 0:
        return
    if _enabled and _cascade_plans_counter is not None:
        _cascade_plans_counter.add(count)
    if _prom_enabled and _prom_cascade_plans_counter is not None:
        _prom_cascade_plans_counter.inc(count)
