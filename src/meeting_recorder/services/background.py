"""
Фоновый запуск прогонов пайплайна (fire-and-forget).

Назначение:
- вебхук и reconciliation не ждут завершения пайплайна
- каждый фоновый прогон под надзором: исключение логируется, а не теряется
- ограниченное время на дренаж при остановке процесса
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.common.metrics import BACKGROUND_INFLIGHT

log = get_project_logger()


class BackgroundRunner:
    def __init__(self, *, max_workers: int | None = None, name: str = "pipeline") -> None:
        s = get_settings()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers or s.pipeline_workers)),
            thread_name_prefix=name,
        )
        self._lock = threading.Lock()
        self._inflight: set[Future] = set()
        self._closed = False

    @property
    def inflight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def submit(self, label: str, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future | None:
        """
        Поставить задачу в фон. После shutdown новые задачи не принимаются (None).
        """
        with self._lock:
            if self._closed:
                log.warning("background_submit_rejected", extra={"payload": {"label": label}})
                return None
            fut = self._executor.submit(fn, *args, **kwargs)
            self._inflight.add(fut)
            BACKGROUND_INFLIGHT.set(len(self._inflight))
        fut.add_done_callback(lambda f: self._on_done(label, f))
        return fut

    def _on_done(self, label: str, fut: Future) -> None:
        with self._lock:
            self._inflight.discard(fut)
            BACKGROUND_INFLIGHT.set(len(self._inflight))
        if fut.cancelled():
            log.warning("background_task_cancelled", extra={"payload": {"label": label}})
            return
        err = fut.exception()
        if err is not None:
            log.error(
                "background_task_failed",
                extra={"payload": {"label": label, "err": str(err)[:300]}},
                exc_info=(type(err), err, err.__traceback__),
            )

    def wait_idle(self, timeout_sec: float) -> bool:
        """Дождаться завершения всех задач (для тестов и дренажа)."""
        deadline = time.monotonic() + max(0.0, timeout_sec)
        while True:
            with self._lock:
                pending = list(self._inflight)
            if not pending:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            for fut in pending:
                try:
                    fut.result(timeout=max(0.0, remaining))
                except Exception:
                    # ошибка уже залогирована в _on_done
                    pass
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break

    def shutdown(self, grace_sec: float | None = None) -> bool:
        """
        Перестать принимать задачи, дать текущим grace_sec на завершение.
        Возвращает True, если всё успело завершиться.
        """
        grace = float(grace_sec if grace_sec is not None else get_settings().shutdown_grace_sec)
        with self._lock:
            self._closed = True
        drained = self.wait_idle(grace)
        if not drained:
            log.warning(
                "background_shutdown_grace_exceeded",
                extra={"payload": {"grace_sec": grace, "inflight": self.inflight}},
            )
        # не ждём зависшие потоки: процесс завершается, очередь отменяем
        self._executor.shutdown(wait=drained, cancel_futures=True)
        log.info("background_runner_stopped", extra={"payload": {"drained": drained}})
        return drained
