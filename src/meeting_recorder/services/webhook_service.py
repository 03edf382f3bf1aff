"""
Сервисный слой: приём вебхуков.

Назначение:
- событие календаря "встреча началась" → встреча + отправка бота
- события бота (закрытый список): started / transcript / finished
- finished запускает пайплайн в фоне и сразу отвечает

Важно:
- повторный finished при processing/completed/failed: no-op
- реальная защита от двойного запуска: атомарный переход в processing
  внутри оркестратора, проверка здесь только экономит поток
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.errors import (
    ConflictError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from meeting_recorder.common.ids import fallback_calendar_event_id, new_meeting_id
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.common.metrics import record_webhook_event
from meeting_recorder.common.time import from_unix, utc_now
from meeting_recorder.connectors.base import ProviderGateway, SessionData
from meeting_recorder.domain.deadline import LinkWindow
from meeting_recorder.domain.enums import BotJoinStatus, MeetingStatus, WebhookEventType
from meeting_recorder.domain.state_machine import FINISHED_NOOP_STATUSES, sources_for
from meeting_recorder.services.background import BackgroundRunner
from meeting_recorder.services.pipeline_service import RecordingPipeline
from meeting_recorder.storage.db import db_session
from meeting_recorder.storage.models import Meeting
from meeting_recorder.storage.repositories import MeetingRepository

log = get_project_logger()


def _unix_time(value: Any) -> datetime:
    # inf и даты за пределами datetime дают OverflowError / OSError, а не ValueError
    try:
        return from_unix(float(value))
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise ValidationError("payload.timestamp должен быть unix-временем") from e


@dataclass
class IngestResult:
    event_type: str
    action: str  # dispatched|duplicate|linked|created|updated|logged|ignored|rejected
    meeting_id: str | None = None
    session_id: str | None = None
    link_window: dict | None = None


@dataclass
class CalendarMeeting:
    """Поля события календаря, которые нам нужны."""

    calendar_event_id: str
    conference_id: str
    title: str | None = None
    description: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None


class WebhookIngestService:
    def __init__(
        self,
        *,
        pipeline: RecordingPipeline,
        runner: BackgroundRunner,
        provider: ProviderGateway,
    ) -> None:
        self.pipeline = pipeline
        self.runner = runner
        self.provider = provider

    # =========================================================================
    # КАЛЕНДАРЬ
    # =========================================================================
    def handle_meeting_started(self, event: CalendarMeeting) -> Meeting:
        """
        Создать встречу и отправить бота.
        started → bot_joining → bot_joined (или failed, если провайдер отказал).
        """
        meeting_id = new_meeting_id()
        try:
            with db_session() as s:
                repo = MeetingRepository(s)
                if repo.get_by_calendar_event_id(event.calendar_event_id) is not None:
                    raise ConflictError(
                        "Встреча для этого события календаря уже существует",
                        {"calendar_event_id": event.calendar_event_id},
                    )
                repo.create(
                    meeting_id=meeting_id,
                    status=MeetingStatus.started,
                    bot_join_status=BotJoinStatus.pending,
                    calendar_event_id=event.calendar_event_id,
                    conference_id=event.conference_id,
                    title=event.title or "Untitled meeting",
                    description=event.description,
                    meeting_started_at=event.starts_at or utc_now(),
                    meeting_ended_at=event.ends_at,
                )
        except IntegrityError as e:
            raise ConflictError(
                "Встреча для этого события календаря уже существует",
                {"calendar_event_id": event.calendar_event_id},
            ) from e
        log.info(
            "meeting_created",
            extra={
                "payload": {
                    "meeting_id": meeting_id,
                    "calendar_event_id": event.calendar_event_id,
                    "conference_id": event.conference_id,
                }
            },
        )

        with db_session() as s:
            MeetingRepository(s).compare_and_set_status(
                meeting_id,
                expected=[MeetingStatus.started],
                new_status=MeetingStatus.bot_joining,
                bot_join_status=BotJoinStatus.joining,
            )

        settings = get_settings()
        try:
            session_id = self.provider.join_meeting(
                conference_id=event.conference_id,
                webhook_url=f"{settings.base_url.rstrip('/')}/webhook/chatterbox",
            )
        except ProviderError as e:
            with db_session() as sess:
                MeetingRepository(sess).compare_and_set_status(
                    meeting_id,
                    expected=sources_for(MeetingStatus.failed),
                    new_status=MeetingStatus.failed,
                    bot_join_status=BotJoinStatus.failed,
                    last_error={"step": "bot_join", "detail": e.message, "details": e.details},
                )
            log.error(
                "bot_join_failed",
                extra={"payload": {"meeting_id": meeting_id, "err": str(e.message)[:300]}},
            )
            raise

        with db_session() as sess:
            repo = MeetingRepository(sess)
            repo.compare_and_set_status(
                meeting_id,
                expected=sources_for(MeetingStatus.bot_joined),
                new_status=MeetingStatus.bot_joined,
                bot_join_status=BotJoinStatus.joined,
                provider_session_id=session_id,
            )
            meeting = repo.get(meeting_id)
        log.info(
            "bot_joined",
            extra={"payload": {"meeting_id": meeting_id, "session_id": session_id}},
        )
        return meeting

    # =========================================================================
    # СОБЫТИЯ БОТА
    # =========================================================================
    def handle_provider_event(self, event_type: str | None, payload: dict[str, Any]) -> IngestResult:
        etype = WebhookEventType.parse(event_type)
        if etype is None:
            log.warning(
                "webhook_unknown_type",
                extra={"payload": {"type": str(event_type)[:64]}},
            )
            record_webhook_event(source="chatterbox", event_type="unknown", result="ignored")
            return IngestResult(event_type=str(event_type), action="ignored")

        if etype == WebhookEventType.started:
            result = self._on_started(payload)
        elif etype == WebhookEventType.transcript:
            result = self._on_transcript(payload)
        else:
            result = self._on_finished(payload)

        record_webhook_event(source="chatterbox", event_type=etype.value, result=result.action)
        return result

    @staticmethod
    def _session_id(payload: dict[str, Any]) -> str:
        sid = str(payload.get("sessionId") or "").strip()
        if not sid:
            raise ValidationError("payload.sessionId обязателен")
        return sid

    def _lookup_session(self, session_id: str) -> SessionData | None:
        try:
            return self.provider.get_session_data(session_id)
        except ProviderError as e:
            log.warning(
                "webhook_session_lookup_failed",
                extra={"payload": {"session_id": session_id, "err": str(e.message)[:300]}},
            )
            return None

    def _on_started(self, payload: dict[str, Any]) -> IngestResult:
        session_id = self._session_id(payload)
        started_at = _unix_time(payload["timestamp"]) if payload.get("timestamp") else utc_now()

        with db_session() as s:
            meeting = MeetingRepository(s).get_by_session_id(session_id)

        if meeting is not None:
            return self._mark_recording(meeting.id, session_id=None, action="updated")

        # бот запущен в обход календаря: пробуем найти встречу по конференции
        data = self._lookup_session(session_id)
        conference_id = data.conference_id if data else None
        if conference_id:
            with db_session() as s:
                existing = MeetingRepository(s).find_latest_by_conference_id(conference_id)
            if existing is not None and not existing.provider_session_id:
                return self._mark_recording(existing.id, session_id=session_id, action="linked")

        meeting_id = new_meeting_id()
        try:
            with db_session() as s:
                MeetingRepository(s).create(
                    meeting_id=meeting_id,
                    status=MeetingStatus.recording,
                    bot_join_status=BotJoinStatus.joined,
                    calendar_event_id=fallback_calendar_event_id(session_id),
                    conference_id=conference_id or "unknown",
                    provider_session_id=session_id,
                    title=f"Google Meet {conference_id}" if conference_id else f"Meeting {session_id[:8]}",
                    description="Meeting started via direct bot integration",
                    meeting_started_at=started_at,
                )
        except IntegrityError:
            # параллельный started для той же сессии уже создал встречу
            with db_session() as s:
                meeting = MeetingRepository(s).get_by_session_id(session_id)
            return IngestResult(
                event_type="started",
                action="duplicate",
                meeting_id=meeting.id if meeting else None,
                session_id=session_id,
            )

        log.info(
            "meeting_created_from_provider_fallback",
            extra={
                "payload": {
                    "meeting_id": meeting_id,
                    "session_id": session_id,
                    "conference_id": conference_id,
                }
            },
        )
        return IngestResult(
            event_type="started", action="created", meeting_id=meeting_id, session_id=session_id
        )

    def _mark_recording(self, meeting_id: str, *, session_id: str | None, action: str) -> IngestResult:
        fields: dict[str, Any] = {"bot_join_status": BotJoinStatus.joined}
        if session_id:
            fields["provider_session_id"] = session_id
        with db_session() as s:
            ok = MeetingRepository(s).compare_and_set_status(
                meeting_id,
                expected=sources_for(MeetingStatus.recording),
                new_status=MeetingStatus.recording,
                **fields,
            )
        if not ok:
            log.info(
                "webhook_started_ignored",
                extra={"payload": {"meeting_id": meeting_id, "reason": "status_not_forward"}},
            )
            return IngestResult(event_type="started", action="ignored", meeting_id=meeting_id)
        log.info(
            "meeting_recording_started",
            extra={"payload": {"meeting_id": meeting_id, "action": action}},
        )
        return IngestResult(
            event_type="started", action=action, meeting_id=meeting_id, session_id=session_id
        )

    def _on_transcript(self, payload: dict[str, Any]) -> IngestResult:
        session_id = str(payload.get("sessionId") or "") or None
        log.info(
            "webhook_transcript_received",
            extra={
                "payload": {
                    "session_id": session_id,
                    "speaker": payload.get("speaker"),
                    "chars": len(str(payload.get("text") or "")),
                }
            },
        )
        return IngestResult(event_type="transcript", action="logged", session_id=session_id)

    def _on_finished(self, payload: dict[str, Any]) -> IngestResult:
        session_id = self._session_id(payload)
        if payload.get("timestamp") in (None, ""):
            raise ValidationError("payload.timestamp обязателен для finished")
        issued_at = _unix_time(payload["timestamp"])
        recording_url = str(payload.get("recordingUrl") or "").strip() or None

        with db_session() as s:
            meeting = MeetingRepository(s).get_by_session_id(session_id)
        if meeting is None:
            raise NotFoundError("Встреча для сессии не найдена", {"session_id": session_id})

        status = MeetingStatus(meeting.status)
        if status in FINISHED_NOOP_STATUSES:
            log.info(
                "webhook_finished_duplicate",
                extra={
                    "payload": {
                        "meeting_id": meeting.id,
                        "session_id": session_id,
                        "status": status.value,
                    }
                },
            )
            return IngestResult(
                event_type="finished", action="duplicate", meeting_id=meeting.id, session_id=session_id
            )

        settings = get_settings()
        window = LinkWindow.from_issue(
            issued_at,
            ttl_sec=settings.recording_link_ttl_sec,
            urgent_sec=settings.recording_link_urgent_sec,
        )
        info = window.describe(utc_now())
        log.log(
            logging.WARNING if info["urgent"] else logging.INFO,
            "webhook_finished_received",
            extra={
                "payload": {
                    "meeting_id": meeting.id,
                    "session_id": session_id,
                    "has_recording_url": bool(recording_url),
                    "link_window": info,
                }
            },
        )

        fut = self.runner.submit(
            f"process_recording:{meeting.id}",
            self.pipeline.process_recording,
            meeting.id,
            recording_url=recording_url,
            session_id=session_id,
            link_issued_at=issued_at,
            source="webhook",
        )
        return IngestResult(
            event_type="finished",
            action="dispatched" if fut is not None else "rejected",
            meeting_id=meeting.id,
            session_id=session_id,
            link_window=info,
        )
