"""
Worker Reconciliation.

Назначение:
- периодически запускать reconciliation poller
- подбирать встречи, для которых вебхук finished потерян или опоздал

Остановка:
- SIGTERM/SIGINT прерывают ожидание сразу, новый цикл не начинается
- фоновым прогонам пайплайна даётся SHUTDOWN_GRACE_SEC, потом выход принудительный
"""

from __future__ import annotations

import os
import signal
import threading

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.logging import get_project_logger, setup_logging
from meeting_recorder.jobs.reconciliation_job import run_loop
from meeting_recorder.services.runtime import build_runtime

log = get_project_logger()


def install_signal_handlers(stop: threading.Event) -> None:
    def _handle(signum, _frame) -> None:
        log.info("worker_stop_requested", extra={"payload": {"signal": signum}})
        stop.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def main() -> None:
    setup_logging()
    settings = get_settings()
    runtime = build_runtime(settings=settings)
    stop = threading.Event()
    install_signal_handlers(stop)

    log.info(
        "worker_reconciliation_started",
        extra={
            "payload": {
                "enabled": bool(settings.reconciliation_enabled),
                "interval_sec": int(settings.reconciliation_interval_sec),
                "limit": int(settings.reconciliation_limit),
            }
        },
    )

    run_loop(runtime.poller, stop, interval_sec=settings.reconciliation_interval_sec)

    drained = runtime.shutdown(settings.shutdown_grace_sec)
    log.info("worker_reconciliation_stopped", extra={"payload": {"drained": drained}})
    if not drained:
        # потоки пула не демонические: без этого процесс ждал бы зависший прогон
        os._exit(1)


if __name__ == "__main__":
    main()
