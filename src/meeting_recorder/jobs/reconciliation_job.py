"""
Reconciliation job.

Назначение:
- поиск встреч, застрявших в bot_joined / recording (вебхук потерян или опоздал)
- bot_joined дольше потолка → failed без обращения к провайдеру
- иначе свежие данные у провайдера; есть ссылка на запись → пайплайн в фоне
- опционально: повторная попытка для недавно упавших встреч (failed → processing)

Важно:
- ошибка по одной встрече не прерывает цикл
- недоступность БД валит только текущий цикл
- пайплайн не ждём: цикл опроса никогда не блокируется обработкой
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.errors import ProviderError
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.common.metrics import record_reconcile_result
from meeting_recorder.common.time import age_seconds, utc_now
from meeting_recorder.connectors.base import ProviderGateway
from meeting_recorder.domain.enums import MeetingStatus
from meeting_recorder.services.background import BackgroundRunner
from meeting_recorder.services.pipeline_service import RecordingPipeline
from meeting_recorder.storage.db import db_session
from meeting_recorder.storage.models import Meeting
from meeting_recorder.storage.repositories import MeetingRepository

log = get_project_logger()


@dataclass
class ReconcileResult:
    ok: bool = True
    scanned: int = 0
    dispatched: int = 0
    recovered: int = 0
    force_failed: int = 0
    skipped: int = 0
    errors: int = 0
    dispatched_ids: list[str] = field(default_factory=list)
    force_failed_ids: list[str] = field(default_factory=list)


class ReconciliationPoller:
    def __init__(
        self,
        *,
        pipeline: RecordingPipeline,
        provider: ProviderGateway,
        runner: BackgroundRunner,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.pipeline = pipeline
        self.provider = provider
        self.runner = runner
        self._clock = clock

    # -------------------------------------------------------------------------
    # Один цикл
    # -------------------------------------------------------------------------
    def run_once(self, *, limit: int | None = None) -> ReconcileResult:
        s = get_settings()
        result = ReconcileResult()
        if not s.reconciliation_enabled:
            log.info("reconciliation_job_skipped", extra={"payload": {"reason": "disabled"}})
            return result

        batch = max(1, int(limit if limit is not None else s.reconciliation_limit))
        now = self._clock()
        try:
            with db_session() as sess:
                repo = MeetingRepository(sess)
                bot_joined = repo.list_stale(
                    status=MeetingStatus.bot_joined,
                    changed_before=now - timedelta(minutes=s.reconcile_bot_joined_stale_min),
                    limit=batch,
                )
                recording = repo.list_stale(
                    status=MeetingStatus.recording,
                    changed_before=now - timedelta(minutes=s.reconcile_recording_stale_min),
                    limit=batch,
                )
                failed: list[Meeting] = []
                if s.reconcile_recover_failed:
                    failed = repo.list_recoverable_failed(
                        failed_before=now - timedelta(minutes=s.reconcile_failed_retry_after_min),
                        created_after=now - timedelta(hours=s.recovery_max_age_hours),
                        max_recoveries=max(0, int(s.recovery_max_attempts)),
                        limit=batch,
                    )
        except Exception as e:
            result.ok = False
            log.error(
                "reconciliation_cycle_failed",
                extra={"payload": {"stage": "scan", "err": str(e)[:300]}},
            )
            self._record(result)
            return result

        ceiling_sec = s.reconcile_bot_joined_ceiling_hours * 3600
        for m in bot_joined:
            result.scanned += 1
            age = age_seconds(m.status_changed_at, now=now) or 0.0
            if age > ceiling_sec:
                self._guard(result, m, lambda m=m, age=age: self._force_fail(result, m, age))
            else:
                self._guard(result, m, lambda m=m: self._recheck(result, m, recovery=False))

        for m in recording:
            result.scanned += 1
            self._guard(result, m, lambda m=m: self._recheck(result, m, recovery=False))

        for m in failed:
            result.scanned += 1
            self._guard(result, m, lambda m=m: self._recheck(result, m, recovery=True))

        log.info(
            "reconciliation_job_finished",
            extra={
                "payload": {
                    "scanned": result.scanned,
                    "dispatched": result.dispatched,
                    "recovered": result.recovered,
                    "force_failed": result.force_failed,
                    "skipped": result.skipped,
                    "errors": result.errors,
                }
            },
        )
        self._record(result)
        return result

    @staticmethod
    def _record(result: ReconcileResult) -> None:
        record_reconcile_result(
            ok=result.ok,
            scanned=result.scanned,
            dispatched=result.dispatched,
            force_failed=result.force_failed,
            errors=result.errors,
        )

    @staticmethod
    def _guard(result: ReconcileResult, meeting: Meeting, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as e:
            result.errors += 1
            log.error(
                "reconciliation_meeting_failed",
                extra={"payload": {"meeting_id": meeting.id, "err": str(e)[:300]}},
            )

    # -------------------------------------------------------------------------
    # Действия по встрече
    # -------------------------------------------------------------------------
    def _force_fail(self, result: ReconcileResult, meeting: Meeting, age_sec: float) -> None:
        with db_session() as sess:
            ok = MeetingRepository(sess).compare_and_set_status(
                meeting.id,
                expected=[MeetingStatus.bot_joined],
                new_status=MeetingStatus.failed,
                processing_completed_at=self._clock(),
                last_error={
                    "step": "reconciliation",
                    "detail": "Бот в встрече дольше допустимого, запись не началась",
                    "attempts": 0,
                    "fatal": True,
                    "stale_sec": int(age_sec),
                },
            )
        if not ok:
            result.skipped += 1
            return
        result.force_failed += 1
        result.force_failed_ids.append(meeting.id)
        log.warning(
            "reconciliation_force_failed",
            extra={"payload": {"meeting_id": meeting.id, "stale_sec": int(age_sec)}},
        )

    def _recheck(self, result: ReconcileResult, meeting: Meeting, *, recovery: bool) -> None:
        session_id = meeting.provider_session_id
        if not session_id:
            result.skipped += 1
            log.info(
                "reconciliation_skipped",
                extra={"payload": {"meeting_id": meeting.id, "reason": "no_session_id"}},
            )
            return

        try:
            data = self.provider.get_session_data(session_id)
        except ProviderError as e:
            result.errors += 1
            log.warning(
                "reconciliation_provider_error",
                extra={
                    "payload": {
                        "meeting_id": meeting.id,
                        "session_id": session_id,
                        "err": str(e.message)[:300],
                    }
                },
            )
            return

        if not data.recording_url:
            result.skipped += 1
            log.info(
                "reconciliation_no_recording_yet",
                extra={"payload": {"meeting_id": meeting.id, "session_id": session_id}},
            )
            return

        fut = self.runner.submit(
            f"reconcile:{meeting.id}",
            self.pipeline.process_recording,
            meeting.id,
            recording_url=data.recording_url,
            session_id=session_id,
            link_issued_at=self._clock(),
            allow_recovery=recovery,
            session_data=data,
            source="reconciliation_recovery" if recovery else "reconciliation",
        )
        if fut is None:
            result.skipped += 1
            return
        result.dispatched += 1
        result.dispatched_ids.append(meeting.id)
        if recovery:
            result.recovered += 1
        log.info(
            "reconciliation_dispatched",
            extra={
                "payload": {
                    "meeting_id": meeting.id,
                    "status": MeetingStatus(meeting.status).value,
                    "recovery": recovery,
                }
            },
        )


# =============================================================================
# ЦИКЛ ОПРОСА
# =============================================================================
def run_loop(
    poller: ReconciliationPoller,
    stop: threading.Event,
    *,
    interval_sec: int | None = None,
) -> None:
    """
    Крутится до stop.set(). Остановка прерывает ожидание сразу,
    новый цикл после stop не начинается.
    """
    interval = max(5, int(interval_sec or get_settings().reconciliation_interval_sec))
    while not stop.is_set():
        try:
            poller.run_once()
        except Exception as e:
            log.error("worker_reconciliation_error", extra={"payload": {"err": str(e)[:300]}})
        stop.wait(interval)
    log.info("reconciliation_loop_stopped")


def start_background_loop(poller: ReconciliationPoller, stop: threading.Event) -> threading.Thread:
    t = threading.Thread(
        target=run_loop,
        args=(poller, stop),
        name="reconciliation",
        daemon=True,
    )
    t.start()
    return t
