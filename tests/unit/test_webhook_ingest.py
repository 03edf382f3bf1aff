from __future__ import annotations

import time

import pytest

from meeting_recorder.common.errors import (
    ConflictError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
    ValidationError,
)
from meeting_recorder.domain.enums import BotJoinStatus, MeetingStatus
from meeting_recorder.services.webhook_service import CalendarMeeting, WebhookIngestService
from meeting_recorder.storage.db import db_session
from meeting_recorder.storage.repositories import MeetingRepository


@pytest.fixture()
def ingest(pipeline, runner, provider) -> WebhookIngestService:
    return WebhookIngestService(pipeline=pipeline, runner=runner, provider=provider)


def _by_session(session_id: str):
    with db_session() as s:
        return MeetingRepository(s).get_by_session_id(session_id)


def _get(meeting_id: str):
    with db_session() as s:
        return MeetingRepository(s).get(meeting_id)


# =============================================================================
# КАЛЕНДАРЬ
# =============================================================================
def test_meeting_started_creates_meeting_and_joins_bot(ingest, provider):
    m = ingest.handle_meeting_started(
        CalendarMeeting(calendar_event_id="evt-1", conference_id="abc-defg-hij", title="Sync")
    )
    assert m.status == MeetingStatus.bot_joined
    assert m.bot_join_status == BotJoinStatus.joined
    assert m.provider_session_id == "mock-session-1"
    assert provider.joined == ["abc-defg-hij"]


def test_bot_join_status_is_joining_during_provider_call(ingest, provider, monkeypatch):
    seen: list[tuple] = []
    original = provider.join_meeting

    def _join(**kwargs):
        with db_session() as s:
            m = MeetingRepository(s).get_by_calendar_event_id("evt-7")
        seen.append((m.status, m.bot_join_status))
        return original(**kwargs)

    monkeypatch.setattr(provider, "join_meeting", _join)

    m = ingest.handle_meeting_started(
        CalendarMeeting(calendar_event_id="evt-7", conference_id="abc-defg-hij")
    )

    assert seen == [(MeetingStatus.bot_joining, BotJoinStatus.joining)]
    assert m.bot_join_status == BotJoinStatus.joined


def test_meeting_started_duplicate_event_conflicts(ingest):
    event = CalendarMeeting(calendar_event_id="evt-1", conference_id="abc-defg-hij")
    ingest.handle_meeting_started(event)
    with pytest.raises(ConflictError):
        ingest.handle_meeting_started(event)


def test_meeting_started_join_failure_marks_failed(ingest, provider, monkeypatch):
    def _refuse(**kwargs):
        raise TransientProviderError("bot pool exhausted")

    monkeypatch.setattr(provider, "join_meeting", _refuse)

    with pytest.raises(ProviderError):
        ingest.handle_meeting_started(
            CalendarMeeting(calendar_event_id="evt-2", conference_id="abc-defg-hij")
        )
    with db_session() as s:
        m = MeetingRepository(s).get_by_calendar_event_id("evt-2")
    assert m.status == MeetingStatus.failed
    assert m.bot_join_status == BotJoinStatus.failed
    assert m.last_error["step"] == "bot_join"


# =============================================================================
# СОБЫТИЯ БОТА
# =============================================================================
def test_unknown_event_type_is_ignored(ingest):
    res = ingest.handle_provider_event("participant_joined", {"sessionId": "s"})
    assert res.action == "ignored"


def test_started_moves_known_meeting_to_recording(ingest, make_meeting):
    mid = make_meeting(MeetingStatus.bot_joined, provider_session_id="sess-1")
    res = ingest.handle_provider_event("started", {"sessionId": "sess-1"})
    assert res.action == "updated"
    assert _get(mid).status == MeetingStatus.recording


def test_started_links_meeting_by_conference(ingest, make_meeting, add_session):
    add_session("sess-2")
    mid = make_meeting(MeetingStatus.bot_joined, conference_id="abc-defg-hij")

    res = ingest.handle_provider_event("started", {"sessionId": "sess-2"})

    assert res.action == "linked"
    m = _get(mid)
    assert m.provider_session_id == "sess-2"
    assert m.status == MeetingStatus.recording


def test_started_without_calendar_creates_fallback_meeting(ingest):
    res = ingest.handle_provider_event("started", {"sessionId": "sess-3", "timestamp": 1_772_445_600})

    assert res.action == "created"
    m = _by_session("sess-3")
    assert m.id == res.meeting_id
    assert m.status == MeetingStatus.recording
    assert m.calendar_event_id == "chatterbox-sess-3"


def test_transcript_event_is_logged_only(ingest):
    res = ingest.handle_provider_event(
        "transcript", {"sessionId": "sess-1", "speaker": "u1", "text": "hi"}
    )
    assert res.action == "logged"


def test_finished_requires_session_and_timestamp(ingest, make_meeting):
    make_meeting(MeetingStatus.recording, provider_session_id="sess-1")
    with pytest.raises(ValidationError):
        ingest.handle_provider_event("finished", {"timestamp": time.time()})
    with pytest.raises(ValidationError):
        ingest.handle_provider_event("finished", {"sessionId": "sess-1"})
    with pytest.raises(ValidationError):
        ingest.handle_provider_event("finished", {"sessionId": "sess-1", "timestamp": "yesterday"})


@pytest.mark.parametrize("ts", ["1e400", "-1e400", 1e20])
def test_out_of_range_timestamp_is_validation_error(ingest, make_meeting, ts):
    mid = make_meeting(MeetingStatus.recording, provider_session_id="sess-1")
    with pytest.raises(ValidationError):
        ingest.handle_provider_event("finished", {"sessionId": "sess-1", "timestamp": ts})
    with pytest.raises(ValidationError):
        ingest.handle_provider_event("started", {"sessionId": "sess-9", "timestamp": ts})
    assert _get(mid).status == MeetingStatus.recording
    assert _by_session("sess-9") is None


def test_finished_for_unknown_session_is_not_found(ingest):
    with pytest.raises(NotFoundError):
        ingest.handle_provider_event("finished", {"sessionId": "nope", "timestamp": time.time()})


def test_finished_dispatches_pipeline(ingest, make_meeting, add_session, runner, binary_sink):
    add_session("sess-1")
    mid = make_meeting(MeetingStatus.recording, provider_session_id="sess-1")

    res = ingest.handle_provider_event(
        "finished",
        {"sessionId": "sess-1", "timestamp": time.time(), "recordingUrl": "https://cdn.example/x.mkv"},
    )

    assert res.action == "dispatched"
    assert res.link_window["expired"] is False
    assert runner.wait_idle(10)
    assert _get(mid).status == MeetingStatus.completed
    assert binary_sink.uploads[0][0] == "https://cdn.example/x.mkv"


@pytest.mark.parametrize(
    "status", [MeetingStatus.processing, MeetingStatus.completed, MeetingStatus.failed]
)
def test_repeated_finished_is_noop(ingest, make_meeting, binary_sink, runner, status):
    make_meeting(status, provider_session_id="sess-1")
    res = ingest.handle_provider_event("finished", {"sessionId": "sess-1", "timestamp": time.time()})
    assert res.action == "duplicate"
    assert runner.inflight == 0
    assert binary_sink.calls == 0
