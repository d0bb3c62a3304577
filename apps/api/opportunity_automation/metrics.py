from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

opportunity_trigger_rule_runs_total = Counter(
    "opportunity_trigger_rule_runs_total",
    "Total trigger rule executions by phase and rule",
    ["phase", "rule"],
)

opportunity_trigger_rule_duration_seconds = Histogram(
    "opportunity_trigger_rule_duration_seconds",
    "Trigger rule duration in seconds",
    ["phase", "rule"],
)

opportunity_trigger_rejections_total = Counter(
    "opportunity_trigger_rejections_total",
    "Total records rejected by trigger rules",
    ["phase", "rule"],
)

opportunity_trigger_rule_failures_total = Counter(
    "opportunity_trigger_rule_failures_total",
    "Total after-phase trigger rule failures",
    ["phase", "rule"],
)

opportunity_trigger_recursion_skips_total = Counter(
    "opportunity_trigger_recursion_skips_total",
    "Total records skipped by the per-transaction recursion guard",
    ["phase"],
)

opportunity_batch_records_total = Counter(
    "opportunity_batch_records_total",
    "Total opportunity records submitted through batch endpoints by outcome",
    ["operation", "outcome"],
)

opportunity_notification_failures_total = Counter(
    "opportunity_notification_failures_total",
    "Total notification messages that could not be sent",
    ["reason"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_batch_request(operation: str, record_count: int, rejected_count: int) -> None:
    accepted = max(record_count - rejected_count, 0)
    if accepted:
        opportunity_batch_records_total.labels(operation=operation, outcome="accepted").inc(accepted)
    if rejected_count:
        opportunity_batch_records_total.labels(operation=operation, outcome="rejected").inc(rejected_count)


def observe_trigger_rule(phase: str, rule: str, duration: float, rejected_count: int = 0) -> None:
    opportunity_trigger_rule_runs_total.labels(phase=phase, rule=rule).inc()
    opportunity_trigger_rule_duration_seconds.labels(phase=phase, rule=rule).observe(duration)
    if rejected_count > 0:
        opportunity_trigger_rejections_total.labels(phase=phase, rule=rule).inc(rejected_count)


def observe_trigger_rule_failure(phase: str, rule: str) -> None:
    opportunity_trigger_rule_failures_total.labels(phase=phase, rule=rule).inc()


def observe_recursion_skips(phase: str, count: int) -> None:
    if count > 0:
        opportunity_trigger_recursion_skips_total.labels(phase=phase).inc(count)


def observe_notification_failures(reason: str, count: int = 1) -> None:
    if count > 0:
        opportunity_notification_failures_total.labels(reason=reason).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
