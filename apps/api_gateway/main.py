"""
API Gateway (FastAPI).

Функции:
- /health, /metrics
- вебхуки календаря и бота
- management API встреч (статус, retry, force-process)

Жизненный цикл:
- startup: сборка Runtime (один экземпляр компонентов на процесс)
- shutdown: новые фоновые прогоны не принимаются, текущим даём
  SHUTDOWN_GRACE_SEC на завершение
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apps.api_gateway.routers.meetings import router as meetings_router
from apps.api_gateway.routers.webhooks import router as webhooks_router
from meeting_recorder.common.config import get_settings
from meeting_recorder.common.errors import AppError, ErrCode
from meeting_recorder.common.logging import get_project_logger, setup_logging
from meeting_recorder.common.metrics import setup_metrics_endpoint
from meeting_recorder.jobs.reconciliation_job import start_background_loop
from meeting_recorder.services.runtime import Runtime, build_runtime

log = get_project_logger()

_STATUS_BY_CODE = {
    ErrCode.VALIDATION: 400,
    ErrCode.UNAUTHORIZED: 401,
    ErrCode.NOT_FOUND: 404,
    ErrCode.CONFLICT: 409,
    ErrCode.SOURCE_EXPIRED: 502,
    ErrCode.PROVIDER_TRANSIENT: 502,
    ErrCode.PROVIDER_ERROR: 502,
}


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        status_code = _STATUS_BY_CODE.get(exc.code, 500)
        log.log(
            logging.ERROR if status_code >= 500 else logging.INFO,
            "http_app_error",
            extra={
                "payload": {
                    "path": request.url.path,
                    "status_code": status_code,
                    "code": exc.code,
                    "err": exc.message[:300],
                }
            },
        )
        return JSONResponse(
            status_code=status_code,
            content={"code": exc.code, "message": exc.message, "details": exc.details or {}},
        )


def create_app(*, runtime: Runtime | None = None) -> FastAPI:
    app = FastAPI(title="Meeting Recorder", version="0.1.0")
    settings = get_settings()

    setup_metrics_endpoint(app)
    _register_error_handlers(app)

    if runtime is not None:
        app.state.runtime = runtime
    stop = threading.Event()

    @app.get("/health")
    def health() -> dict[str, Any]:
        rt = getattr(app.state, "runtime", None)
        return {
            "ok": True,
            "runtime_ready": rt is not None,
            "provider_configured": bool(rt.provider.health()) if rt is not None else False,
            "inflight": rt.runner.inflight if rt is not None else 0,
        }

    @app.on_event("startup")
    def startup() -> None:
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = build_runtime()
        if settings.reconciliation_in_api:
            start_background_loop(app.state.runtime.poller, stop)
            log.info("reconciliation_loop_started_in_api")

    @app.on_event("shutdown")
    def shutdown() -> None:
        stop.set()
        rt = getattr(app.state, "runtime", None)
        if rt is not None:
            rt.shutdown(settings.shutdown_grace_sec)
        log.info("api_gateway_stopped")

    app.include_router(webhooks_router)
    app.include_router(meetings_router)

    return app


setup_logging()
app = create_app()
