from __future__ import annotations

import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

from app.core.settings import S

METRICS_ENABLED = S.metrics_enabled

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP requests resulting in server errors",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "In-progress HTTP requests",
    ["method", "path"],
)
MESSAGES_SENT = Counter(
    "messages_sent_total",
    "Messages committed to the store",
    ["message_type"],
)
MESSAGE_SEND_FAILURES = Counter(
    "message_send_failures_total",
    "Sends that ended in the failed state",
)
STATUS_TRANSITIONS = Counter(
    "message_status_transitions_total",
    "Delivery pipeline transitions applied",
    ["status"],
)
REACTIONS = Counter(
    "reactions_total",
    "Reaction mutations",
    ["action"],
)
EDITS = Counter(
    "edits_total",
    "Edit attempts by outcome",
    ["outcome"],
)
EDIT_HISTORY_FAILURES = Counter(
    "edit_history_write_failures_total",
    "Edits committed without their history row",
)
ACTIVE_SUBSCRIPTIONS = Gauge(
    "active_subscriptions",
    "Live subscriptions held open in this process",
    ["kind"],
)
PRESENCE_HEARTBEATS = Counter(
    "presence_heartbeats_total",
    "Presence heartbeats written",
)
UPTIME_SECONDS = Gauge(
    "app_uptime_seconds",
    "Application uptime in seconds",
)
APP_INFO = Info(
    "app",
    "Application metadata",
)

_START_TIME = time.monotonic()


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    if route and getattr(route, "path", None):
        return route.path
    return request.url.path


def record_message_sent(message_type: str) -> None:
    MESSAGES_SENT.labels(message_type=message_type).inc()


def record_send_failure() -> None:
    MESSAGE_SEND_FAILURES.inc()


def record_status_transition(status: str) -> None:
    STATUS_TRANSITIONS.labels(status=status).inc()


def record_reaction(action: str) -> None:
    REACTIONS.labels(action=action).inc()


def record_edit(outcome: str) -> None:
    EDITS.labels(outcome=outcome).inc()


def record_edit_history_failure() -> None:
    EDIT_HISTORY_FAILURES.inc()


def record_heartbeat() -> None:
    PRESENCE_HEARTBEATS.inc()


def subscription_opened(kind: str) -> None:
    ACTIVE_SUBSCRIPTIONS.labels(kind=kind).inc()


def subscription_closed(kind: str) -> None:
    ACTIVE_SUBSCRIPTIONS.labels(kind=kind).dec()


async def metrics_middleware(request: Request, call_next: Callable[[Request], Response]) -> Response:
    path = _route_path(request)
    method = request.method
    start = time.perf_counter()
    IN_PROGRESS.labels(method=method, path=path).inc()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        IN_PROGRESS.labels(method=method, path=path).dec()
        REQUEST_LATENCY.labels(method=method, path=path).observe(time.perf_counter() - start)
        REQUEST_COUNT.labels(method=method, path=path, status=str(status_code)).inc()
        if status_code >= 500:
            REQUEST_ERRORS.labels(method=method, path=path, status=str(status_code)).inc()


def set_app_info(name: str, version: str) -> None:
    APP_INFO.info({"name": name, "version": version})


def metrics_endpoint() -> Response:
    UPTIME_SECONDS.set(time.monotonic() - _START_TIME)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
