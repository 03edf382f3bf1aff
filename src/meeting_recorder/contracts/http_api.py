"""
HTTP API контракты (Pydantic-модели).

Назначение:
- валидация входа/выхода на уровне FastAPI
- стабильные структуры для вебхуков и management API
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

HTTP_API_VERSION = "1"


# =============================================================================
# ВЕБХУКИ
# =============================================================================
class ConferenceData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    conference_id: str = Field(alias="conferenceId", min_length=1)


class EventTime(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    date_time: datetime | None = Field(default=None, alias="dateTime")


class MeetingStartedWebhook(BaseModel):
    """Событие календаря: встреча началась."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    summary: str | None = None
    description: str | None = None
    conference_data: ConferenceData = Field(alias="conferenceData")
    start: EventTime | None = None
    end: EventTime | None = None


class ProviderWebhook(BaseModel):
    """Событие бота: {type, payload}."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1)
    payload: dict[str, Any]


# =============================================================================
# ОТВЕТЫ
# =============================================================================
class WebhookAck(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    success: bool = True
    event_type: str
    action: str
    meeting_id: str | None = None
    session_id: str | None = None
    link_window: dict[str, Any] | None = None


class MeetingStartedResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    meeting_id: str
    status: str
    bot_join_status: str
    session_id: str | None = None


class AttemptView(BaseModel):
    step: str
    outcome: str
    attempt_no: int
    error_summary: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    finished_at: datetime | None = None


class MeetingView(BaseModel):
    id: str
    calendar_event_id: str
    conference_id: str | None = None
    session_id: str | None = None
    title: str | None = None
    status: str
    bot_join_status: str
    recording_file_url: str | None = None
    transcript_doc_url: str | None = None
    chat_message_id: str | None = None
    created_at: datetime
    status_changed_at: datetime
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    recovery_count: int = 0
    last_error: dict[str, Any] | None = None


class MeetingStatusResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    meeting: MeetingView
    attempts: list[AttemptView] = Field(default_factory=list)
    processing_time_sec: float | None = None


class ForceProcessRequest(BaseModel):
    recording_url: str | None = None


class ActionAccepted(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    meeting_id: str
    action: str
    accepted: bool = True
