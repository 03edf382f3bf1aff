"""
Worker Retention.

Назначение:
- раз в RETENTION_INTERVAL_SEC удалять брошенные встречи и старый журнал попыток
"""

from __future__ import annotations

import signal
import threading

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.logging import get_project_logger, setup_logging
from meeting_recorder.jobs.retention_job import run as run_retention

log = get_project_logger()


def run_loop(stop: threading.Event, *, interval_sec: int) -> None:
    while not stop.is_set():
        try:
            run_retention()
        except Exception as e:
            log.error("worker_retention_error", extra={"payload": {"err": str(e)[:300]}})
        stop.wait(interval_sec)


def main() -> None:
    setup_logging()
    settings = get_settings()
    interval_sec = max(60, int(settings.retention_interval_sec))
    stop = threading.Event()

    def _handle(signum, _frame) -> None:
        stop.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)

    log.info("worker_retention_started", extra={"payload": {"interval_sec": interval_sec}})
    run_loop(stop, interval_sec=interval_sec)
    log.info("worker_retention_stopped")


if __name__ == "__main__":
    main()
