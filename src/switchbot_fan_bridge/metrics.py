"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "switchbot_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "switchbot_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
DISPATCH_RESULTS = Counter(
    "switchbot_dispatch_total",
    "Dispatch cycle outcomes",
    ["transport", "result"],
    registry=_REGISTRY,
)
DISPATCH_DURATION = Histogram(
    "switchbot_dispatch_duration_seconds",
    "Time spent in a dispatch cycle",
    ["transport", "result"],
    registry=_REGISTRY,
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)
TRANSPORT_REQUESTS = Counter(
    "switchbot_transport_requests_total",
    "Outbound requests issued per transport and command",
    ["transport", "command", "result"],
    registry=_REGISTRY,
)
RADIO_RETRIES = Counter(
    "switchbot_radio_retries_total",
    "Radio command attempts retried after a failure",
    registry=_REGISTRY,
)
CLOUD_FALLBACKS = Counter(
    "switchbot_cloud_fallbacks_total",
    "Operations that fell back from radio to cloud",
    ["operation"],
    registry=_REGISTRY,
)
REFRESH_RESULTS = Counter(
    "switchbot_refresh_total",
    "Status refresh outcomes",
    ["transport", "result"],
    registry=_REGISTRY,
)
REFRESH_SKIPPED = Counter(
    "switchbot_refresh_skipped_total",
    "Refresh ticks skipped",
    ["reason"],
    registry=_REGISTRY,
)
INBOUND_UPDATES = Counter(
    "switchbot_inbound_updates_total",
    "Inbound channel payloads processed",
    ["channel", "result"],
    registry=_REGISTRY,
)
FAILURES = Counter(
    "switchbot_failures_total",
    "Failures classified by the recovery policy",
    ["operation", "kind"],
    registry=_REGISTRY,
)
UPDATE_IN_PROGRESS = Gauge(
    "switchbot_update_in_progress",
    "Whether a dispatch cycle is in flight (1) or not (0)",
    ["device_id"],
    registry=_REGISTRY,
)
SUBSYSTEM_FAILURES = Counter(
    "switchbot_subsystem_failures_total",
    "Subsystem failures leading to suppression",
    ["subsystem"],
    registry=_REGISTRY,
)
SUBSYSTEM_STATUS = Gauge(
    "switchbot_subsystem_status",
    "Subsystem health (0=suppressed,1=degraded/recovering,2=ok)",
    ["subsystem"],
    registry=_REGISTRY,
)


def get_registry() -> CollectorRegistry:
    """Return the registry holding the bridge metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def record_dispatch(transport: str, result: str, duration_seconds: float) -> None:
    """Record the outcome and duration of a dispatch cycle."""

    DISPATCH_RESULTS.labels(transport=transport, result=result).inc()
    DISPATCH_DURATION.labels(transport=transport, result=result).observe(duration_seconds)


def record_transport_request(transport: str, command: str, result: str) -> None:
    TRANSPORT_REQUESTS.labels(transport=transport, command=command, result=result).inc()


def record_radio_retry() -> None:
    RADIO_RETRIES.inc()


def record_cloud_fallback(operation: str) -> None:
    CLOUD_FALLBACKS.labels(operation=operation).inc()


def record_refresh(transport: str, result: str) -> None:
    REFRESH_RESULTS.labels(transport=transport, result=result).inc()


def record_refresh_skipped(reason: str) -> None:
    REFRESH_SKIPPED.labels(reason=reason).inc()


def record_inbound_update(channel: str, result: str) -> None:
    INBOUND_UPDATES.labels(channel=channel, result=result).inc()


def record_failure(operation: str, kind: str) -> None:
    FAILURES.labels(operation=operation, kind=kind).inc()


def set_update_in_progress(device_id: str, in_progress: bool) -> None:
    UPDATE_IN_PROGRESS.labels(device_id=device_id).set(1 if in_progress else 0)


def record_subsystem_failure(subsystem: str) -> None:
    """Record a subsystem failure triggering suppression."""

    SUBSYSTEM_FAILURES.labels(subsystem=subsystem).inc()


def record_subsystem_status(subsystem: str, status: str) -> None:
    """Record the current subsystem status."""

    code = 0
    if status == "ok":
        code = 2
    elif status in {"recovering", "degraded"}:
        code = 1
    SUBSYSTEM_STATUS.labels(subsystem=subsystem).set(code)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
