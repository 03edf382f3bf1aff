"""
Сервисный слой: оркестратор пайплайна артефактов одной встречи.

Назначение:
- single-flight: запуск только через атомарный переход статуса в processing
- шаги строго по порядку: fetch_metadata → validate_source → transfer_binary
  → generate_document → notify (каждый через StepExecutor)
- финальный переход completed | failed, контекст ошибки сохраняется до алерта
- ручной retry / force-process и статус встречи для management API

Важно:
- оркестратор: единственный писатель статуса во время processing
- validate_source и notify не блокируют пайплайн
- упавшее после закрытия окна ссылки помечается fatal и non-retryable
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.errors import (
    ConflictError,
    ErrCode,
    NotFoundError,
    ProviderError,
    SourceExpiredError,
    StepFailedError,
    ValidationError,
    short_error,
)
from meeting_recorder.common.ids import new_run_id
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.common.metrics import record_pipeline_result
from meeting_recorder.common.time import age_seconds, as_utc, utc_now
from meeting_recorder.connectors.base import ProviderGateway, SessionData, TranscriptEntry
from meeting_recorder.domain.deadline import LinkWindow
from meeting_recorder.domain.enums import MeetingStatus, PipelineStep
from meeting_recorder.domain.state_machine import (
    RETRY_FORBIDDEN_STATUSES,
    sources_for,
    step_order,
)
from meeting_recorder.notifications.slack import Notifier
from meeting_recorder.processing.transcript import (
    TranscriptMeta,
    document_title,
    entries_from_json,
    entries_to_json,
    recording_file_name,
    render_document,
    speaker_aliases,
    transcript_stats,
)
from meeting_recorder.services.step_executor import StepExecutor
from meeting_recorder.sinks.base import BinarySink, Document, DocumentSink, UploadedFile
from meeting_recorder.storage.db import db_session
from meeting_recorder.storage.models import Meeting, ProcessingAttempt
from meeting_recorder.storage.repositories import MeetingRepository, ProcessingAttemptRepository

log = get_project_logger()


# =============================================================================
# РЕЗУЛЬТАТЫ
# =============================================================================
@dataclass
class PipelineResult:
    meeting_id: str
    status: str  # completed|failed|skipped
    reason: str | None = None
    failed_step: str | None = None
    recording: UploadedFile | None = None
    document: Document | None = None
    notified: bool = False


@dataclass
class MeetingStatusView:
    meeting: Meeting
    attempts: list[ProcessingAttempt] = field(default_factory=list)
    processing_time_sec: float | None = None


@dataclass
class _RunState:
    meeting: Meeting
    run_id: str
    window: LinkWindow | None
    session_id: str | None
    recording_url: str | None = None
    transcript: list[TranscriptEntry] = field(default_factory=list)
    session_data: SessionData | None = None
    recording: UploadedFile | None = None
    document: Document | None = None
    notified: bool = False


# =============================================================================
# ОРКЕСТРАТОР
# =============================================================================
class RecordingPipeline:
    def __init__(
        self,
        *,
        provider: ProviderGateway,
        binary_sink: BinarySink,
        document_sink: DocumentSink,
        notifier: Notifier,
        executor: StepExecutor | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.provider = provider
        self.binary_sink = binary_sink
        self.document_sink = document_sink
        self.notifier = notifier
        self.executor = executor or StepExecutor()
        self._clock = clock
        # встречи, которые этот процесс сейчас ведёт: meeting_id -> run_id
        self._active: dict[str, str] = {}
        self._active_lock = threading.Lock()
        self._steps: dict[PipelineStep, Callable[[_RunState], None]] = {
            PipelineStep.fetch_metadata: self._step_fetch_metadata,
            PipelineStep.validate_source: self._step_validate_source,
            PipelineStep.transfer_binary: self._step_transfer_binary,
            PipelineStep.generate_document: self._step_generate_document,
            PipelineStep.notify: self._step_notify,
        }

    # -------------------------------------------------------------------------
    # Чтение
    # -------------------------------------------------------------------------
    def _load(self, meeting_id: str) -> Meeting:
        with db_session() as s:
            m = MeetingRepository(s).get(meeting_id)
        if m is None:
            raise NotFoundError("Встреча не найдена", {"meeting_id": meeting_id})
        return m

    def get_status(self, meeting_id: str) -> MeetingStatusView:
        with db_session() as s:
            m = MeetingRepository(s).get(meeting_id)
            if m is None:
                raise NotFoundError("Встреча не найдена", {"meeting_id": meeting_id})
            attempts = ProcessingAttemptRepository(s).list_by_meeting(meeting_id)

        processing_time = None
        if m.processing_started_at and m.processing_completed_at:
            processing_time = (
                as_utc(m.processing_completed_at) - as_utc(m.processing_started_at)
            ).total_seconds()
        elif m.processing_started_at and m.status == MeetingStatus.processing:
            processing_time = age_seconds(m.processing_started_at, now=self._clock())
        return MeetingStatusView(meeting=m, attempts=attempts, processing_time_sec=processing_time)

    # -------------------------------------------------------------------------
    # Single-flight вход в processing
    # -------------------------------------------------------------------------
    def _acquire(
        self,
        meeting: Meeting,
        *,
        allow_recovery: bool,
        recording_url: str | None,
        session_id: str | None,
    ) -> bool:
        now = self._clock()
        fields: dict[str, Any] = {
            "processing_started_at": now,
            "processing_completed_at": None,
            "last_error": None,
        }
        if recording_url:
            fields["recording_url"] = recording_url
        if session_id and not meeting.provider_session_id:
            fields["provider_session_id"] = session_id

        with db_session() as s:
            repo = MeetingRepository(s)
            if allow_recovery and meeting.status == MeetingStatus.failed:
                won = repo.compare_and_set_status(
                    meeting.id,
                    expected=[MeetingStatus.failed],
                    new_status=MeetingStatus.processing,
                    recovery_count=Meeting.recovery_count + 1,
                    **fields,
                )
            else:
                won = repo.compare_and_set_status(
                    meeting.id,
                    expected=sources_for(MeetingStatus.processing),
                    new_status=MeetingStatus.processing,
                    **fields,
                )
            if won:
                # попытки, брошенные прошлым упавшим процессом
                ProcessingAttemptRepository(s).fail_dangling(
                    meeting.id, reason="interrupted: superseded by a new run"
                )
        return won

    # -------------------------------------------------------------------------
    # Основной вход
    # -------------------------------------------------------------------------
    def process_recording(
        self,
        meeting_id: str,
        *,
        recording_url: str | None = None,
        session_id: str | None = None,
        link_issued_at: datetime | None = None,
        allow_recovery: bool = False,
        session_data: SessionData | None = None,
        source: str = "webhook",
    ) -> PipelineResult:
        """
        Прогон пайплайна для встречи.

        - recording_url: ссылка из события (если есть), иначе берём у провайдера
        - link_issued_at: момент выдачи ссылки, от него считается окно доступности
        - allow_recovery: разрешён переход failed -> processing
        """
        started = time.monotonic()
        meeting = self._load(meeting_id)
        sid = session_id or meeting.provider_session_id

        if not self._acquire(
            meeting, allow_recovery=allow_recovery, recording_url=recording_url, session_id=sid
        ):
            log.info(
                "pipeline_duplicate_trigger_ignored",
                extra={
                    "payload": {
                        "meeting_id": meeting_id,
                        "status": MeetingStatus(meeting.status).value,
                        "source": source,
                    }
                },
            )
            record_pipeline_result(result="skipped")
            return PipelineResult(meeting_id=meeting_id, status="skipped", reason="not_acquired")

        s = get_settings()
        window = None
        if link_issued_at is not None:
            window = LinkWindow.from_issue(
                link_issued_at,
                ttl_sec=s.recording_link_ttl_sec,
                urgent_sec=s.recording_link_urgent_sec,
            )
        state = _RunState(
            meeting=meeting,
            run_id=new_run_id(),
            window=window,
            session_id=sid,
            recording_url=recording_url,
            session_data=session_data,
        )
        log.info(
            "pipeline_started",
            extra={
                "payload": {
                    "meeting_id": meeting_id,
                    "run_id": state.run_id,
                    "source": source,
                    "recovery": allow_recovery,
                    "link_window": window.describe(self._clock()) if window else None,
                }
            },
        )

        with self._active_lock:
            self._active[meeting_id] = state.run_id
        try:
            return self._execute(state, started)
        finally:
            with self._active_lock:
                if self._active.get(meeting_id) == state.run_id:
                    del self._active[meeting_id]

    def _execute(self, state: _RunState, started: float) -> PipelineResult:
        meeting_id = state.meeting.id
        current = PipelineStep.fetch_metadata
        try:
            for step in step_order():
                current = step
                self._steps[step](state)
        except StepFailedError as e:
            self._fail(state, e)
            record_pipeline_result(result="failed", duration_sec=time.monotonic() - started)
            return PipelineResult(
                meeting_id=meeting_id,
                status="failed",
                reason=e.message,
                failed_step=e.step,
                recording=state.recording,
                document=state.document,
            )
        except Exception as e:
            # сбой вне шага (например, БД): встречу всё равно закрываем
            err = StepFailedError(
                code=ErrCode.UNKNOWN,
                message=short_error(e),
                step=current.value,
                cause=e,
            )
            self._fail(state, err)
            record_pipeline_result(result="failed", duration_sec=time.monotonic() - started)
            raise

        self._complete(state)
        record_pipeline_result(result="completed", duration_sec=time.monotonic() - started)
        return PipelineResult(
            meeting_id=meeting_id,
            status="completed",
            recording=state.recording,
            document=state.document,
            notified=state.notified,
        )

    # -------------------------------------------------------------------------
    # Шаги
    # -------------------------------------------------------------------------
    def _run(self, state: _RunState, step: PipelineStep, fn, *, max_attempts: int | None = None):
        return self.executor.run(
            state.meeting.id,
            step,
            fn,
            max_attempts=max_attempts,
            run_id=state.run_id,
            context={"session_id": state.session_id},
        )

    def _step_fetch_metadata(self, state: _RunState) -> None:
        def fetch() -> SessionData | None:
            if state.session_data is not None:
                return state.session_data
            if not state.session_id:
                if state.recording_url:
                    return None
                raise ValidationError(
                    "Нет ни ссылки на запись, ни session_id провайдера",
                    {"meeting_id": state.meeting.id},
                )
            try:
                data = self.provider.get_session_data(state.session_id)
            except ProviderError as e:
                if not state.recording_url:
                    raise
                # ссылка уже есть из события, метаданные не обязательны
                log.warning(
                    "pipeline_metadata_unavailable",
                    extra={
                        "payload": {
                            "meeting_id": state.meeting.id,
                            "session_id": state.session_id,
                            "err": str(e.message)[:300],
                        }
                    },
                )
                return None
            if not (state.recording_url or data.recording_url):
                raise SourceExpiredError(
                    "Провайдер не вернул ссылку на запись",
                    {"session_id": state.session_id},
                )
            return data

        data = self._run(state, PipelineStep.fetch_metadata, fetch)
        state.session_data = data
        if data is not None:
            state.recording_url = state.recording_url or data.recording_url
            state.transcript = list(data.transcript)
        elif state.meeting.transcript:
            state.transcript = entries_from_json(state.meeting.transcript)

        fields: dict[str, Any] = {"recording_url": state.recording_url}
        if data is not None:
            fields["transcript"] = entries_to_json(state.transcript)
            if data.started_at:
                fields["recording_started_at"] = data.started_at
            if data.ended_at:
                fields["recording_ended_at"] = data.ended_at
                if not state.meeting.meeting_ended_at:
                    fields["meeting_ended_at"] = data.ended_at
        with db_session() as s:
            MeetingRepository(s).update_fields(state.meeting.id, **fields)

    def _step_validate_source(self, state: _RunState) -> None:
        url = state.recording_url or ""

        def probe() -> None:
            result = self.binary_sink.probe(url)
            if not result.reachable:
                log.warning(
                    "validate_source_advisory",
                    extra={
                        "payload": {
                            "meeting_id": state.meeting.id,
                            "status_code": result.status_code,
                        }
                    },
                )
            else:
                log.info(
                    "validate_source_ok",
                    extra={
                        "payload": {
                            "meeting_id": state.meeting.id,
                            "content_length": result.content_length,
                        }
                    },
                )

        try:
            self._run(state, PipelineStep.validate_source, probe, max_attempts=1)
        except StepFailedError as e:
            log.warning(
                "validate_source_skipped",
                extra={"payload": {"meeting_id": state.meeting.id, "err": e.last_error}},
            )

    def _step_transfer_binary(self, state: _RunState) -> None:
        url = state.recording_url or ""
        name = recording_file_name(state.meeting.title)
        uploaded = self._run(
            state,
            PipelineStep.transfer_binary,
            lambda: self.binary_sink.upload_from_url(source_url=url, file_name=name),
        )
        state.recording = uploaded
        with db_session() as s:
            MeetingRepository(s).update_fields(
                state.meeting.id,
                recording_file_id=uploaded.id,
                recording_file_url=uploaded.view_url,
                recording_size_bytes=uploaded.size_bytes,
            )

    def _transcript_meta(self, state: _RunState) -> TranscriptMeta:
        m = state.meeting
        data = state.session_data
        return TranscriptMeta(
            title=m.title or "Untitled meeting",
            conference_id=m.conference_id,
            description=m.description,
            started_at=m.meeting_started_at or (data.started_at if data else None),
            ended_at=m.meeting_ended_at or (data.ended_at if data else None),
            recording_started_at=(data.started_at if data else None) or m.recording_started_at,
            recording_ended_at=(data.ended_at if data else None) or m.recording_ended_at,
        )

    def _step_generate_document(self, state: _RunState) -> None:
        meta = self._transcript_meta(state)

        def create() -> Document:
            content = render_document(meta, state.transcript, generated_at=self._clock())
            return self.document_sink.create_document(
                title=document_title(state.meeting.title), content=content
            )

        doc = self._run(state, PipelineStep.generate_document, create)
        state.document = doc
        with db_session() as s:
            MeetingRepository(s).update_fields(
                state.meeting.id, transcript_doc_id=doc.id, transcript_doc_url=doc.view_url
            )

    def _step_notify(self, state: _RunState) -> None:
        speakers = list(speaker_aliases(state.transcript).values())
        stats = transcript_stats(state.transcript)
        try:
            ts = self._run(
                state,
                PipelineStep.notify,
                lambda: self.notifier.notify_completion(
                    meeting=state.meeting,
                    recording=state.recording,
                    document=state.document,
                    speakers=speakers,
                    stats=stats,
                ),
            )
        except StepFailedError as e:
            # артефакты уже готовы: неудача уведомления не валит встречу
            log.warning(
                "notify_failed_non_fatal",
                extra={"payload": {"meeting_id": state.meeting.id, "err": e.last_error}},
            )
            return
        if ts:
            with db_session() as s:
                MeetingRepository(s).update_fields(
                    state.meeting.id,
                    chat_message_id=ts,
                    chat_channel=getattr(self.notifier, "channel", None),
                )
        state.notified = bool(ts)

    # -------------------------------------------------------------------------
    # Финальные переходы
    # -------------------------------------------------------------------------
    def _complete(self, state: _RunState) -> None:
        now = self._clock()
        with db_session() as s:
            ok = MeetingRepository(s).compare_and_set_status(
                state.meeting.id,
                expected=[MeetingStatus.processing],
                new_status=MeetingStatus.completed,
                processing_completed_at=now,
            )
        if not ok:
            log.error(
                "pipeline_complete_status_lost",
                extra={"payload": {"meeting_id": state.meeting.id, "run_id": state.run_id}},
            )
            return
        log.info(
            "pipeline_completed",
            extra={
                "payload": {
                    "meeting_id": state.meeting.id,
                    "run_id": state.run_id,
                    "recording_file_id": state.recording.id if state.recording else None,
                    "transcript_doc_id": state.document.id if state.document else None,
                }
            },
        )

    def _fail(self, state: _RunState, err: StepFailedError) -> None:
        """
        processing -> failed. Сначала фиксируем контекст ошибки в БД, потом алерт.
        Ни запись статуса, ни алерт не должны бросать наружу.
        """
        now = self._clock()
        window_closed = state.window is not None and state.window.is_expired(now)
        fatal = bool(err.fatal or window_closed)
        detail = err.message
        if window_closed:
            detail = (
                f"FATAL (non-retryable): окно доступности ссылки истекло "
                f"{state.window.expires_at.isoformat()}; {detail}"
            )
        elif err.fatal:
            detail = f"FATAL (non-retryable): {detail}"

        last_error = {
            **err.to_details(),
            "detail": detail,
            "fatal": fatal,
            "deadline_exceeded": window_closed,
            "deadline": state.window.expires_at.isoformat() if state.window else None,
            "run_id": state.run_id,
        }

        try:
            with db_session() as s:
                ok = MeetingRepository(s).compare_and_set_status(
                    state.meeting.id,
                    expected=[MeetingStatus.processing],
                    new_status=MeetingStatus.failed,
                    processing_completed_at=now,
                    last_error=last_error,
                )
            if not ok:
                log.error(
                    "pipeline_fail_status_lost",
                    extra={"payload": {"meeting_id": state.meeting.id, "run_id": state.run_id}},
                )
        except Exception as e:
            log.error(
                "pipeline_fail_status_update_failed",
                extra={"payload": {"meeting_id": state.meeting.id, "err": str(e)[:300]}},
            )

        log.error(
            "pipeline_failed",
            extra={
                "payload": {
                    "meeting_id": state.meeting.id,
                    "run_id": state.run_id,
                    "step": err.step,
                    "attempts": err.attempt_count,
                    "fatal": fatal,
                    "err": detail[:300],
                }
            },
        )

        try:
            self.notifier.send_critical_alert(
                meeting_id=state.meeting.id,
                step=err.step,
                error=detail,
                context={"attempts": err.attempt_count, "fatal": fatal, "run_id": state.run_id},
            )
        except Exception as e:
            log.error(
                "critical_alert_failed",
                extra={"payload": {"meeting_id": state.meeting.id, "err": str(e)[:300]}},
            )
        try:
            self.notifier.notify_failure(meeting=state.meeting, error=detail, step=err.step)
        except Exception as e:
            log.error(
                "failure_notification_failed",
                extra={"payload": {"meeting_id": state.meeting.id, "err": str(e)[:300]}},
            )

    # -------------------------------------------------------------------------
    # Остановка процесса
    # -------------------------------------------------------------------------
    @property
    def active_meetings(self) -> list[str]:
        with self._active_lock:
            return list(self._active)

    def interrupt_inflight(
        self, *, reason: str = "interrupted: процесс остановлен до завершения прогона"
    ) -> list[str]:
        """
        processing -> failed для прогонов, которые этот процесс не успел закончить.

        Вызывается, когда дренаж при остановке не уложился в grace.
        Встреча остаётся с processing_started_at и попадает под recovery,
        а брошенные попытки закроет следующий прогон при захвате.
        """
        with self._active_lock:
            active = dict(self._active)
        interrupted: list[str] = []
        now = self._clock()
        for meeting_id, run_id in active.items():
            try:
                with db_session() as s:
                    ok = MeetingRepository(s).compare_and_set_status(
                        meeting_id,
                        expected=[MeetingStatus.processing],
                        new_status=MeetingStatus.failed,
                        processing_completed_at=now,
                        last_error={
                            "step": "shutdown",
                            "detail": reason,
                            "interrupted": True,
                            "fatal": False,
                            "attempts": 0,
                            "run_id": run_id,
                        },
                    )
            except Exception as e:
                log.error(
                    "pipeline_interrupt_failed",
                    extra={"payload": {"meeting_id": meeting_id, "err": str(e)[:300]}},
                )
                continue
            if ok:
                interrupted.append(meeting_id)
        if interrupted:
            log.warning(
                "pipeline_runs_interrupted",
                extra={"payload": {"meeting_ids": interrupted, "reason": reason}},
            )
        return interrupted

    # -------------------------------------------------------------------------
    # Ручной retry / force-process
    # -------------------------------------------------------------------------
    def check_retry_allowed(self, meeting_id: str) -> Meeting:
        """Быстрая проверка для API (без обращения к провайдеру)."""
        m = self._load(meeting_id)
        if MeetingStatus(m.status) in RETRY_FORBIDDEN_STATUSES:
            raise ConflictError(
                f"Встреча в статусе {MeetingStatus(m.status).value}, retry запрещён",
                {"meeting_id": meeting_id, "status": MeetingStatus(m.status).value},
            )
        if not m.provider_session_id:
            raise ValidationError(
                "У встречи нет session_id провайдера", {"meeting_id": meeting_id}
            )
        return m

    def _fetch_fresh_locator(self, meeting: Meeting) -> SessionData:
        data = self.provider.get_session_data(meeting.provider_session_id)
        if not data.recording_url:
            raise ValidationError(
                "Провайдер не вернул ссылку на запись",
                {"meeting_id": meeting.id, "session_id": meeting.provider_session_id},
            )
        return data

    def retry_processing(self, meeting_id: str, *, source: str = "manual_retry") -> PipelineResult:
        """
        Повтор обработки: только не из completed/processing.
        Всегда берём свежую ссылку у провайдера (старая скорее всего истекла).
        """
        meeting = self.check_retry_allowed(meeting_id)
        data = self._fetch_fresh_locator(meeting)
        log.info(
            "pipeline_retry_requested",
            extra={"payload": {"meeting_id": meeting_id, "source": source}},
        )
        return self.process_recording(
            meeting_id,
            recording_url=data.recording_url,
            session_id=meeting.provider_session_id,
            link_issued_at=self._clock(),
            allow_recovery=True,
            session_data=data,
            source=source,
        )

    def force_process(self, meeting_id: str, *, recording_url: str | None = None) -> PipelineResult:
        """
        Принудительный прогон (management API). Single-flight сохраняется,
        из completed не запускаем.
        """
        meeting = self._load(meeting_id)
        if MeetingStatus(meeting.status) == MeetingStatus.completed:
            raise ConflictError("Встреча уже обработана", {"meeting_id": meeting_id})
        data = None
        if not recording_url:
            if not meeting.provider_session_id:
                raise ValidationError(
                    "Нет ни ссылки на запись, ни session_id провайдера", {"meeting_id": meeting_id}
                )
            data = self._fetch_fresh_locator(meeting)
            recording_url = data.recording_url
        return self.process_recording(
            meeting_id,
            recording_url=recording_url,
            session_id=meeting.provider_session_id,
            link_issued_at=self._clock(),
            allow_recovery=True,
            session_data=data,
            source="force_process",
        )
