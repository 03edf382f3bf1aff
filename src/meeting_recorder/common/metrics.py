"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics
- Счётчики попыток шагов и исходов пайплайна
- Результаты reconciliation / retention
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

REQUESTS_TOTAL = Counter(
    "recorder_requests_total",
    "Общее количество HTTP запросов",
    ["service", "route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "recorder_http_request_latency_ms",
    "Задержка HTTP запроса (мс)",
    ["service", "route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

STEP_ATTEMPTS_TOTAL = Counter(
    "recorder_step_attempts_total",
    "Попытки шагов пайплайна",
    ["step", "outcome"],  # outcome=completed|failed
)

STEP_LATENCY_MS = Histogram(
    "recorder_step_latency_ms",
    "Длительность одной попытки шага (мс)",
    ["step"],
    buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 180000, 300000),
)

PIPELINE_RUNS_TOTAL = Counter(
    "recorder_pipeline_runs_total",
    "Прогоны пайплайна по исходу",
    ["result"],  # completed|failed|skipped
)

PIPELINE_DURATION_SEC = Histogram(
    "recorder_pipeline_duration_sec",
    "Длительность прогона пайплайна (сек)",
    buckets=(1, 5, 10, 30, 60, 120, 180, 300, 600),
)

BACKGROUND_INFLIGHT = Gauge(
    "recorder_background_inflight",
    "Фоновые прогоны пайплайна в работе",
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "recorder_webhook_events_total",
    "Входящие вебхуки",
    ["source", "event_type", "result"],
)

RECONCILE_RUNS_TOTAL = Counter(
    "recorder_reconcile_runs_total",
    "Количество циклов reconciliation",
    ["result"],  # ok|failed
)

RECONCILE_LAST_SCANNED = Gauge(
    "recorder_reconcile_last_scanned",
    "Встреч просмотрено в последнем цикле",
)

RECONCILE_LAST_DISPATCHED = Gauge(
    "recorder_reconcile_last_dispatched",
    "Встреч отправлено на восстановление в последнем цикле",
)

RECONCILE_LAST_FORCE_FAILED = Gauge(
    "recorder_reconcile_last_force_failed",
    "Встреч переведено в failed по потолку ожидания в последнем цикле",
)

RECONCILE_LAST_ERRORS = Gauge(
    "recorder_reconcile_last_errors",
    "Ошибок по отдельным встречам в последнем цикле",
)

RETENTION_DELETED_TOTAL = Counter(
    "recorder_retention_deleted_total",
    "Удалено записей ретеншном",
    ["entity"],  # meetings|attempts
)


@contextmanager
def track_step_latency(step: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        STEP_LATENCY_MS.labels(step=step).observe(elapsed_ms)


def record_step_attempt(*, step: str, outcome: str) -> None:
    STEP_ATTEMPTS_TOTAL.labels(step=step, outcome=outcome).inc()


def record_pipeline_result(*, result: str, duration_sec: float | None = None) -> None:
    PIPELINE_RUNS_TOTAL.labels(result=result).inc()
    if duration_sec is not None:
        PIPELINE_DURATION_SEC.observe(max(0.0, duration_sec))


def record_webhook_event(*, source: str, event_type: str, result: str) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(source=source, event_type=event_type, result=result).inc()


def record_reconcile_result(
    *,
    ok: bool,
    scanned: int,
    dispatched: int,
    force_failed: int,
    errors: int,
) -> None:
    RECONCILE_RUNS_TOTAL.labels(result="ok" if ok else "failed").inc()
    RECONCILE_LAST_SCANNED.set(max(0, scanned))
    RECONCILE_LAST_DISPATCHED.set(max(0, dispatched))
    RECONCILE_LAST_FORCE_FAILED.set(max(0, force_failed))
    RECONCILE_LAST_ERRORS.set(max(0, errors))


def record_retention_result(*, meetings: int, attempts: int) -> None:
    RETENTION_DELETED_TOTAL.labels(entity="meetings").inc(max(0, meetings))
    RETENTION_DELETED_TOTAL.labels(entity="attempts").inc(max(0, attempts))


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI) -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        route = request.url.path
        method = request.method
        started = time.perf_counter()

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        status_code = str(response.status_code)

        REQUESTS_TOTAL.labels(
            service="api-gateway",
            route=route,
            method=method,
            status=status_code,
        ).inc()
        HTTP_REQUEST_LATENCY_MS.labels(
            service="api-gateway",
            route=route,
            method=method,
        ).observe(elapsed_ms)
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
