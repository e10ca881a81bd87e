from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import HTTPConnection


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

pipeline_transitions_total = Counter(
    "pipeline_transitions_total",
    "Status evaluations by guard outcome",
    ["source", "outcome"],
)

pipeline_transition_duration_seconds = Histogram(
    "pipeline_transition_duration_seconds",
    "Time spent deriving and committing a status transition",
)

pipeline_transition_conflicts_total = Counter(
    "pipeline_transition_conflicts_total",
    "Row-version conflicts while writing a derived status",
)

pipeline_side_effect_failures_total = Counter(
    "pipeline_side_effect_failures_total",
    "Failures after a committed write, by side effect",
    ["side_effect"],
)

stage_ledger_reconciliations_total = Counter(
    "stage_ledger_reconciliations_total",
    "Stage history intervals force-closed by reconciliation",
)

pipeline_notifications_total = Counter(
    "pipeline_notifications_total",
    "Notifications by result",
    ["result"],
)

change_feed_events_total = Counter(
    "change_feed_events_total",
    "Change feed events published",
    ["table", "event_type"],
)

change_feed_subscriber_failures_total = Counter(
    "change_feed_subscriber_failures_total",
    "Change feed subscriber callbacks that raised",
    ["table"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(connection: HTTPConnection) -> str:
    route = connection.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            value = getattr(route, attribute, None)
            if isinstance(value, str) and value:
                return _PATH_PARAM_RE.sub("{id}", value)
    return _sanitize_path(connection.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(source: str, outcome: str, duration: float | None = None) -> None:
    pipeline_transitions_total.labels(source=source, outcome=outcome).inc()
    if duration is not None:
        pipeline_transition_duration_seconds.observe(duration)


def observe_transition_conflict() -> None:
    pipeline_transition_conflicts_total.inc()


def observe_side_effect_failure(side_effect: str) -> None:
    pipeline_side_effect_failures_total.labels(side_effect=side_effect).inc()


def observe_ledger_reconciliation(count: int = 1) -> None:
    if count > 0:
        stage_ledger_reconciliations_total.inc(count)


def observe_notification(result: str) -> None:
    pipeline_notifications_total.labels(result=result).inc()


def observe_feed_event(table: str, event_type: str) -> None:
    change_feed_events_total.labels(table=table, event_type=event_type).inc()


def observe_feed_subscriber_failure(table: str) -> None:
    change_feed_subscriber_failures_total.labels(table=table).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
