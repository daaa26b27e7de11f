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

automation_schedules_total = Counter(
    "automation_schedules_total",
    "Total scheduled automation executions by rule domain",
    ["domain"],
)

automation_executions_total = Counter(
    "automation_executions_total",
    "Total processed automation executions by rule domain and final status",
    ["domain", "status"],
)

automation_execution_duration_seconds = Histogram(
    "automation_execution_duration_seconds",
    "Automation execution processing time in seconds",
    ["domain"],
)

automation_reschedules_total = Counter(
    "automation_reschedules_total",
    "Total executions pushed to the next valid calendar window",
    ["domain"],
)

automation_calendar_fallbacks_total = Counter(
    "automation_calendar_fallbacks_total",
    "Total schedules that used the fallback instant because calendar settings were missing",
)

automation_cascade_depth_warnings_total = Counter(
    "automation_cascade_depth_warnings_total",
    "Total cascades that went past the configured warning depth",
)

rule_catalog_cache_hit_total = Counter(
    "rule_catalog_cache_hit_total",
    "Rule catalog cache hits",
    ["domain"],
)

rule_catalog_cache_miss_total = Counter(
    "rule_catalog_cache_miss_total",
    "Rule catalog cache misses",
    ["domain"],
)

automation_ledger_swept_total = Counter(
    "automation_ledger_swept_total",
    "Total terminal ledger records deleted by the retention sweeper",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_schedule(domain: str) -> None:
    automation_schedules_total.labels(domain=domain).inc()


def observe_execution(domain: str, status: str, duration: float) -> None:
    automation_executions_total.labels(domain=domain, status=status).inc()
    automation_execution_duration_seconds.labels(domain=domain).observe(duration)


def observe_reschedule(domain: str) -> None:
    automation_reschedules_total.labels(domain=domain).inc()


def observe_calendar_fallback() -> None:
    automation_calendar_fallbacks_total.inc()


def observe_cascade_depth_warning() -> None:
    automation_cascade_depth_warnings_total.inc()


def observe_rule_cache_hit(domain: str) -> None:
    rule_catalog_cache_hit_total.labels(domain=domain).inc()


def observe_rule_cache_miss(domain: str) -> None:
    rule_catalog_cache_miss_total.labels(domain=domain).inc()


def observe_ledger_swept(count: int) -> None:
    if count > 0:
        automation_ledger_swept_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
