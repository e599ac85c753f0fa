"""OpenTelemetry + Prometheus fallback wiring for the codelink backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from codelink import config

logger = logging.getLogger("codelink.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_github_calls_counter: Any | None = None
_github_latency_hist: Any | None = None
_github_retry_counter: Any | None = None
_sync_counter: Any | None = None
_auto_link_counter: Any | None = None

_prom_enabled = False
_prom_github_calls_counter: Any | None = None
_prom_github_latency_hist: Any | None = None
_prom_github_retry_counter: Any | None = None
_prom_sync_counter: Any | None = None
_prom_auto_link_counter: Any | None = None


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
    global _github_calls_counter, _github_latency_hist, _github_retry_counter
    global _sync_counter, _auto_link_counter
    global _prom_enabled, _prom_github_calls_counter, _prom_github_latency_hist
    global _prom_github_retry_counter, _prom_sync_counter, _prom_auto_link_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CODELINK_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "codelink-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "codelink",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("codelink.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("codelink.backend")

    _github_calls_counter = meter.create_counter(
        "codelink_github_calls_total",
        unit="1",
        description="GitHub REST calls by endpoint and response status",
    )
    _github_latency_hist = meter.create_histogram(
        "codelink_github_latency_ms",
        unit="ms",
        description="Latency of GitHub REST calls",
    )
    _github_retry_counter = meter.create_counter(
        "codelink_github_retries_total",
        unit="1",
        description="Retries after rate-limit or forbidden responses",
    )
    _sync_counter = meter.create_counter(
        "codelink_repo_syncs_total",
        unit="1",
        description="Repository sync runs by outcome",
    )
    _auto_link_counter = meter.create_counter(
        "codelink_auto_links_total",
        unit="1",
        description="Tarefa links created from detected keys",
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
            _prom_github_calls_counter = Counter(
                "codelink_github_calls_total",
                "GitHub REST calls by endpoint and response status",
                ["endpoint", "status"],
            )
            _prom_github_latency_hist = Histogram(
                "codelink_github_latency_ms",
                "Latency of GitHub REST calls",
                ["endpoint"],
            )
            _prom_github_retry_counter = Counter(
                "codelink_github_retries_total",
                "Retries after rate-limit or forbidden responses",
                ["status"],
            )
            _prom_sync_counter = Counter(
                "codelink_repo_syncs_total",
                "Repository sync runs by outcome",
                ["result"],
            )
            _prom_auto_link_counter = Counter(
                "codelink_auto_links_total",
                "Tarefa links created from detected keys",
                ["entity", "project"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except (ImportError, OSError, ValueError) as exc:
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


def record_github_call(endpoint: str, status: int, duration_ms: float) -> None:
    labels = {"endpoint": endpoint or "unknown", "status": str(status)}
    if _enabled and _github_calls_counter is not None:
        _github_calls_counter.add(1, labels)
    if _enabled and _github_latency_hist is not None:
        _github_latency_hist.record(max(0.0, float(duration_ms)), {"endpoint": labels["endpoint"]})
    if _prom_enabled and _prom_github_calls_counter is not None:
        _prom_github_calls_counter.labels(**_prom_labels(**labels)).inc()
    if _prom_enabled and _prom_github_latency_hist is not None:
        _prom_github_latency_hist.labels(**_prom_labels(endpoint=endpoint)).observe(max(0.0, float(duration_ms)))


def record_github_retry(status: int) -> None:
    if _enabled and _github_retry_counter is not None:
        _github_retry_counter.add(1, {"status": str(status)})
    if _prom_enabled and _prom_github_retry_counter is not None:
        _prom_github_retry_counter.labels(status=str(status)).inc()


def record_sync(result: str) -> None:
    if _enabled and _sync_counter is not None:
        _sync_counter.add(1, {"result": result or "unknown"})
    if _prom_enabled and _prom_sync_counter is not None:
        _prom_sync_counter.labels(**_prom_labels(result=result)).inc()


def record_auto_links(entity: str, count: int, *, project_id: str) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    if _enabled and _auto_link_counter is not None:
        _auto_link_counter.add(safe_count, {"entity": entity or "unknown", "project_id": project_id or "unknown"})
    if _prom_enabled and _prom_auto_link_counter is not None:
        _prom_auto_link_counter.labels(**_prom_labels(entity=entity, project=project_id)).inc(safe_count)
