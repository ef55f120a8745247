"""OpenTelemetry + Prometheus fallback wiring for the kbsync backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from kbsync import config

logger = logging.getLogger("kbsync.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_sync_runs_counter: Any | None = None
_sync_latency_hist: Any | None = None
_sync_items_counter: Any | None = None
_parser_failure_counter: Any | None = None
_events_published_counter: Any | None = None
_events_dropped_counter: Any | None = None

_prom_enabled = False
_prom_sync_runs_counter: Any | None = None
_prom_sync_latency_hist: Any | None = None
_prom_sync_items_counter: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_events_published_counter: Any | None = None
_prom_events_dropped_counter: Any | None = None


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


def _prom_labels(**labels: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in labels.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _sync_runs_counter, _sync_latency_hist, _sync_items_counter, _parser_failure_counter
    global _events_published_counter, _events_dropped_counter
    global _prom_enabled
    global _prom_sync_runs_counter, _prom_sync_latency_hist, _prom_sync_items_counter
    global _prom_parser_failure_counter, _prom_events_published_counter, _prom_events_dropped_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (KBSYNC_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "kbsync-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "kbsync",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("kbsync.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("kbsync.backend")

    _sync_runs_counter = meter.create_counter(
        "kbsync_sync_runs_total",
        unit="1",
        description="Count of knowledge-base sync runs",
    )
    _sync_latency_hist = meter.create_histogram(
        "kbsync_sync_latency_ms",
        unit="ms",
        description="Duration of knowledge-base sync runs",
    )
    _sync_items_counter = meter.create_counter(
        "kbsync_sync_items_total",
        unit="1",
        description="Per-item sync outcomes",
    )
    _parser_failure_counter = meter.create_counter(
        "kbsync_parser_failures_total",
        unit="1",
        description="Count of parser failures",
    )
    _events_published_counter = meter.create_counter(
        "kbsync_events_published_total",
        unit="1",
        description="Data change events published to subscribers",
    )
    _events_dropped_counter = meter.create_counter(
        "kbsync_events_dropped_total",
        unit="1",
        description="Data change events dropped for slow or failed subscribers",
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
            _prom_sync_runs_counter = Counter(
                "kbsync_sync_runs_total",
                "Count of knowledge-base sync runs",
                ["trigger", "result"],
            )
            _prom_sync_latency_hist = Histogram(
                "kbsync_sync_latency_ms",
                "Duration of knowledge-base sync runs",
                ["trigger", "result"],
            )
            _prom_sync_items_counter = Counter(
                "kbsync_sync_items_total",
                "Per-item sync outcomes",
                ["action"],
            )
            _prom_parser_failure_counter = Counter(
                "kbsync_parser_failures_total",
                "Count of parser failures",
                ["parser", "project"],
            )
            _prom_events_published_counter = Counter(
                "kbsync_events_published_total",
                "Data change events published to subscribers",
                ["entity", "mutation"],
            )
            _prom_events_dropped_counter = Counter(
                "kbsync_events_dropped_total",
                "Data change events dropped for slow or failed subscribers",
                ["reason"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
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
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception:
        pass
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception:
        pass
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception:
        pass
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


def record_sync_run(
    trigger: str,
    result: str,
    duration_ms: float,
    *,
    created: int = 0,
    updated: int = 0,
    unchanged: int = 0,
    errors: int = 0,
) -> None:
    labels = {"trigger": trigger or "unknown", "result": result or "unknown"}
    outcomes = {"created": created, "updated": updated, "unchanged": unchanged, "error": errors}
    if _enabled and _sync_runs_counter is not None:
        _sync_runs_counter.add(1, labels)
    if _enabled and _sync_latency_hist is not None:
        _sync_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _enabled and _sync_items_counter is not None:
        for action, count in outcomes.items():
            if count > 0:
                _sync_items_counter.add(int(count), {"action": action})
    if _prom_enabled and _prom_sync_runs_counter is not None:
        _prom_sync_runs_counter.labels(**_prom_labels(**labels)).inc()
    if _prom_enabled and _prom_sync_latency_hist is not None:
        _prom_sync_latency_hist.labels(**_prom_labels(**labels)).observe(max(0.0, float(duration_ms)))
    if _prom_enabled and _prom_sync_items_counter is not None:
        for action, count in outcomes.items():
            if count > 0:
                _prom_sync_items_counter.labels(action=action).inc(int(count))


def record_parser_failure(parser: str, *, project_id: str) -> None:
    labels = {
        "parser": parser or "unknown",
        "project_id": project_id or "unknown",
    }
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(1, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        prom = _prom_labels(parser=parser, project=project_id)
        _prom_parser_failure_counter.labels(**prom).inc()


def record_event_published(entity: str, mutation: str) -> None:
    labels = {"entity": entity or "unknown", "mutation": mutation or "unknown"}
    if _enabled and _events_published_counter is not None:
        _events_published_counter.add(1, labels)
    if _prom_enabled and _prom_events_published_counter is not None:
        _prom_events_published_counter.labels(**_prom_labels(**labels)).inc()


def record_event_dropped(reason: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    if _enabled and _events_dropped_counter is not None:
        _events_dropped_counter.add(safe_count, {"reason": reason or "unknown"})
    if _prom_enabled and _prom_events_dropped_counter is not None:
        _prom_events_dropped_counter.labels(**_prom_labels(reason=reason)).inc(safe_count)
