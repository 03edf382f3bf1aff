from __future__ import annotations

from datetime import timedelta

import pytest

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.time import utc_now
from meeting_recorder.domain.enums import MeetingStatus
from meeting_recorder.jobs import reconciliation_job
from meeting_recorder.jobs.reconciliation_job import ReconciliationPoller
from meeting_recorder.storage.db import db_session
from meeting_recorder.storage.repositories import MeetingRepository


@pytest.fixture()
def poller(pipeline, provider, runner) -> ReconciliationPoller:
    return ReconciliationPoller(pipeline=pipeline, provider=provider, runner=runner)


@pytest.fixture()
def provider_calls(provider, monkeypatch) -> list[tuple[str, tuple]]:
    """Все обращения к провайдеру: (метод, позиционные аргументы)."""
    calls: list[tuple[str, tuple]] = []

    def _wrap(name: str):
        original = getattr(provider, name)

        def _spy(*args, **kwargs):
            calls.append((name, args))
            return original(*args, **kwargs)

        return _spy

    for name in ("join_meeting", "get_session_data", "force_leave", "health"):
        monkeypatch.setattr(provider, name, _wrap(name))
    return calls


def _age(meeting_id: str, **delta) -> None:
    with db_session() as s:
        MeetingRepository(s).update_fields(meeting_id, status_changed_at=utc_now() - timedelta(**delta))


def _get(meeting_id: str):
    with db_session() as s:
        return MeetingRepository(s).get(meeting_id)


def test_stale_bot_joined_with_recording_gets_processed(
    poller, make_meeting, add_session, runner, provider_calls
):
    add_session("sess-1")
    mid = make_meeting(MeetingStatus.bot_joined, provider_session_id="sess-1")
    _age(mid, minutes=15)

    result = poller.run_once()

    assert result.ok is True
    assert result.dispatched == 1
    assert result.dispatched_ids == [mid]
    assert provider_calls[0] == ("get_session_data", ("sess-1",))
    assert runner.wait_idle(10)
    assert _get(mid).status == MeetingStatus.completed


def test_bot_joined_past_ceiling_is_force_failed_without_provider(
    poller, make_meeting, add_session, provider, provider_calls, runner
):
    add_session("sess-1")
    mid = make_meeting(MeetingStatus.bot_joined, provider_session_id="sess-1")
    _age(mid, hours=4)

    result = poller.run_once()

    assert result.force_failed == 1
    assert result.force_failed_ids == [mid]
    assert result.dispatched == 0
    assert provider_calls == []
    assert provider.left == []
    m = _get(mid)
    assert m.status == MeetingStatus.failed
    assert m.last_error["step"] == "reconciliation"
    assert runner.inflight == 0


def test_stale_recording_gets_processed(poller, make_meeting, add_session, runner):
    add_session("sess-1")
    mid = make_meeting(MeetingStatus.recording, provider_session_id="sess-1")
    _age(mid, minutes=45)

    assert poller.run_once().dispatched == 1
    assert runner.wait_idle(10)
    assert _get(mid).status == MeetingStatus.completed


def test_fresh_meetings_are_not_scanned(poller, make_meeting, add_session, provider_calls):
    add_session("sess-1")
    bj = make_meeting(MeetingStatus.bot_joined, provider_session_id="sess-1")
    _age(bj, minutes=5)
    rec = make_meeting(MeetingStatus.recording, provider_session_id="sess-2")
    _age(rec, minutes=20)

    result = poller.run_once()

    assert result.scanned == 0
    assert provider_calls == []


def test_no_recording_yet_is_skipped(poller, make_meeting, add_session, runner):
    add_session("sess-1", recording_url=None)
    mid = make_meeting(MeetingStatus.bot_joined, provider_session_id="sess-1")
    _age(mid, minutes=15)

    result = poller.run_once()

    assert result.skipped == 1
    assert result.dispatched == 0
    assert _get(mid).status == MeetingStatus.bot_joined


def test_meeting_without_session_is_skipped(poller, make_meeting, provider_calls):
    mid = make_meeting(MeetingStatus.bot_joined)
    _age(mid, minutes=15)

    result = poller.run_once()

    assert result.skipped == 1
    assert provider_calls == []


def test_provider_error_does_not_stop_cycle(poller, make_meeting, add_session, runner):
    # первая встреча: провайдер не знает сессию; вторая обрабатывается
    broken = make_meeting(MeetingStatus.bot_joined, provider_session_id="sess-gone")
    _age(broken, minutes=20)
    add_session("sess-ok")
    ok = make_meeting(MeetingStatus.bot_joined, provider_session_id="sess-ok")
    _age(ok, minutes=15)

    result = poller.run_once()

    assert result.errors == 1
    assert result.dispatched_ids == [ok]
    assert runner.wait_idle(10)
    assert _get(broken).status == MeetingStatus.bot_joined
    assert _get(ok).status == MeetingStatus.completed


def test_recent_failed_meeting_is_recovered_once(poller, make_meeting, add_session, runner):
    add_session("sess-1")
    mid = make_meeting(
        MeetingStatus.failed,
        provider_session_id="sess-1",
        processing_started_at=utc_now() - timedelta(minutes=20),
    )
    _age(mid, minutes=10)

    result = poller.run_once()

    assert result.recovered == 1
    assert runner.wait_idle(10)
    m = _get(mid)
    assert m.status == MeetingStatus.completed
    assert m.recovery_count == 1


def test_failed_meeting_out_of_recoveries_is_left_alone(poller, make_meeting, add_session):
    add_session("sess-1")
    mid = make_meeting(
        MeetingStatus.failed,
        provider_session_id="sess-1",
        processing_started_at=utc_now() - timedelta(minutes=20),
        recovery_count=1,
    )
    _age(mid, minutes=10)

    assert poller.run_once().scanned == 0
    assert _get(mid).status == MeetingStatus.failed


def test_failed_before_processing_is_not_recovered(poller, make_meeting, add_session):
    add_session("sess-1")
    mid = make_meeting(MeetingStatus.failed, provider_session_id="sess-1")
    _age(mid, minutes=10)

    assert poller.run_once().scanned == 0


def test_store_failure_skips_cycle(poller, monkeypatch):
    def _boom(self, **kwargs):
        raise RuntimeError("db unavailable")

    monkeypatch.setattr(reconciliation_job.MeetingRepository, "list_stale", _boom)

    result = poller.run_once()

    assert result.ok is False
    assert result.scanned == 0


def test_disabled_poller_does_nothing(poller, make_meeting, provider_calls):
    s = get_settings()
    snapshot = s.reconciliation_enabled
    mid = make_meeting(MeetingStatus.bot_joined, provider_session_id="sess-1")
    _age(mid, hours=4)
    try:
        s.reconciliation_enabled = False
        result = poller.run_once()
    finally:
        s.reconciliation_enabled = snapshot

    assert result.scanned == 0
    assert _get(mid).status == MeetingStatus.bot_joined


def test_run_loop_stops_on_event(poller, monkeypatch):
    import threading

    stop = threading.Event()
    cycles: list[int] = []

    def _once(**kwargs):
        cycles.append(1)
        stop.set()

    monkeypatch.setattr(poller, "run_once", _once)
    reconciliation_job.run_loop(poller, stop, interval_sec=60)

    assert cycles == [1]
