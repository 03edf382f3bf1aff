"""
Исполнитель шагов пайплайна с ретраями.

Назначение:
- одна запись processing_attempts на каждую попытку (started -> completed|failed)
- экспоненциальный backoff между попытками: base * 2**(n-1) → 2s, 4s, 8s
- финальная ошибка пробрасывается наружу с историей попыток (StepFailedError)

Важно:
- синхронная реализация: sleep блокирует только поток текущей встречи
- ошибки не классифицируются здесь: ретраится всё в пределах бюджета,
  а решение "фатально/нет" принимает оркестратор
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, TypeVar

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.errors import (
    AttemptRecord,
    ErrCode,
    StepFailedError,
    is_source_expired,
    short_error,
)
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.common.metrics import record_step_attempt, track_step_latency
from meeting_recorder.domain.enums import AttemptOutcome, PipelineStep
from meeting_recorder.storage.db import db_session
from meeting_recorder.storage.repositories import ProcessingAttemptRepository

log = get_project_logger()

T = TypeVar("T")


def backoff_delay(attempt_no: int, base_sec: float) -> float:
    """Пауза после неудачной попытки attempt_no (1-based)."""
    return float(base_sec) * (2 ** max(0, attempt_no - 1))


class StepExecutor:
    def __init__(
        self,
        *,
        max_attempts: int | None = None,
        backoff_base_sec: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        s = get_settings()
        self.max_attempts = int(max_attempts if max_attempts is not None else s.step_max_attempts)
        self.backoff_base_sec = float(
            backoff_base_sec if backoff_base_sec is not None else s.step_backoff_base_sec
        )
        self._sleep = sleep

    def _start_attempt(
        self, meeting_id: str, step: PipelineStep, attempt_no: int, run_id: str | None, context: dict
    ) -> int:
        with db_session() as s:
            return ProcessingAttemptRepository(s).start(
                meeting_id=meeting_id,
                step=step,
                attempt_no=attempt_no,
                run_id=run_id,
                context=context,
            )

    def _finish_attempt(
        self,
        attempt_id: int,
        outcome: AttemptOutcome,
        *,
        error_summary: str | None = None,
        context: dict | None = None,
    ) -> None:
        with db_session() as s:
            ProcessingAttemptRepository(s).finish(
                attempt_id, outcome=outcome, error_summary=error_summary, context=context
            )

    def run(
        self,
        meeting_id: str,
        step: PipelineStep,
        unit_of_work: Callable[[], T],
        *,
        max_attempts: int | None = None,
        run_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> T:
        """
        Выполнить unit_of_work до max_attempts раз.

        Возвращает результат первой успешной попытки.
        После последней неудачи бросает StepFailedError (cause: последняя ошибка).
        """
        limit = max(1, int(max_attempts if max_attempts is not None else self.max_attempts))
        ctx = dict(context or {})

        with db_session() as s:
            offset = ProcessingAttemptRepository(s).max_attempt_no(meeting_id, step)

        history: list[AttemptRecord] = []
        last_error: Exception | None = None

        for i in range(1, limit + 1):
            attempt_no = offset + i
            attempt_id = self._start_attempt(
                meeting_id, step, attempt_no, run_id, {**ctx, "max_attempts": limit}
            )
            try:
                with track_step_latency(step.value):
                    result = unit_of_work()
            except Exception as e:
                last_error = e
                summary = short_error(e)
                history.append(
                    AttemptRecord(attempt_no=attempt_no, error=summary, error_type=type(e).__name__)
                )
                self._finish_attempt(
                    attempt_id,
                    AttemptOutcome.failed,
                    error_summary=summary,
                    context={
                        **ctx,
                        "max_attempts": limit,
                        "error_type": type(e).__name__,
                        "details": getattr(e, "details", None),
                    },
                )
                record_step_attempt(step=step.value, outcome=AttemptOutcome.failed.value)

                if i < limit:
                    delay = backoff_delay(i, self.backoff_base_sec)
                    log.warning(
                        "step_attempt_failed",
                        extra={
                            "payload": {
                                "meeting_id": meeting_id,
                                "step": step.value,
                                "attempt": i,
                                "max_attempts": limit,
                                "retry_in_sec": delay,
                                "err": summary,
                            }
                        },
                    )
                    self._sleep(delay)
                continue

            self._finish_attempt(attempt_id, AttemptOutcome.completed)
            record_step_attempt(step=step.value, outcome=AttemptOutcome.completed.value)
            log.info(
                "step_completed",
                extra={"payload": {"meeting_id": meeting_id, "step": step.value, "attempt": i}},
            )
            return result

        log.error(
            "step_failed",
            extra={
                "payload": {
                    "meeting_id": meeting_id,
                    "step": step.value,
                    "attempts": len(history),
                    "err": history[-1].error if history else None,
                }
            },
        )
        raise StepFailedError(
            code=ErrCode.STEP_FAILED,
            message=f"Шаг {step.value} не выполнен за {len(history)} попыток: "
            f"{history[-1].error if history else 'unknown'}",
            step=step.value,
            attempts=history,
            cause=last_error,
            fatal=is_source_expired(last_error),
        ) from last_error
