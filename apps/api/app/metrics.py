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

crosssell_jobs_total = Counter(
    "crosssell_jobs_total",
    "Total scheduled jobs by status",
    ["job_type", "status"],
)

crosssell_job_duration_seconds = Histogram(
    "crosssell_job_duration_seconds",
    "Scheduled job duration in seconds",
    ["job_type"],
)

csv_import_rows_total = Counter(
    "csv_import_rows_total",
    "CSV import rows by entity type and outcome",
    ["entity_type", "outcome"],
)

csv_export_rows_total = Counter(
    "csv_export_rows_total",
    "CSV export rows by entity type",
    ["entity_type"],
)

notifications_created_total = Counter(
    "notifications_created_total",
    "Notifications created by type",
    ["notification_type"],
)

matrix_build_duration_seconds = Histogram(
    "matrix_build_duration_seconds",
    "Cross-sell matrix build duration in seconds",
)

matrix_cells_total = Counter(
    "matrix_cells_total",
    "Cross-sell matrix cells emitted by kind",
    ["kind"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


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


def observe_job(job_type: str, status: str, duration: float) -> None:
    crosssell_jobs_total.labels(job_type=job_type, status=status).inc()
    crosssell_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_import_rows(entity_type: str, created: int, failed: int) -> None:
    if created > 0:
        csv_import_rows_total.labels(entity_type=entity_type, outcome="created").inc(created)
    if failed > 0:
        csv_import_rows_total.labels(entity_type=entity_type, outcome="failed").inc(failed)


def observe_export_rows(entity_type: str, count: int) -> None:
    if count > 0:
        csv_export_rows_total.labels(entity_type=entity_type).inc(count)


def observe_notification_created(notification_type: str, count: int = 1) -> None:
    if count > 0:
        notifications_created_total.labels(notification_type=notification_type).inc(count)


def observe_matrix_build(duration: float, active_cells: int, opportunity_cells: int) -> None:
    matrix_build_duration_seconds.observe(duration)
    if active_cells > 0:
        matrix_cells_total.labels(kind="active").inc(active_cells)
    if opportunity_cells > 0:
        matrix_cells_total.labels(kind="opportunity").inc(opportunity_cells)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
