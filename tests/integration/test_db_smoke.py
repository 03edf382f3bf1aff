from meeting_recorder.domain.enums import AttemptOutcome, MeetingStatus, PipelineStep
from meeting_recorder.storage.db import db_session
from meeting_recorder.storage.models import Meeting, ProcessingAttempt
from meeting_recorder.storage.repositories import MeetingRepository, ProcessingAttemptRepository


def test_db_session_context_manager_smoke():
    with db_session() as s:
        assert s is not None
        MeetingRepository(s).create(
            meeting_id="test_meeting",
            status=MeetingStatus.started,
            calendar_event_id="evt-smoke",
        )

    with db_session() as s:
        m = s.get(Meeting, "test_meeting")
        assert m.status == MeetingStatus.started
        assert m.recovery_count == 0
        assert m.status_changed_at is not None


def test_compare_and_set_only_one_winner():
    with db_session() as s:
        MeetingRepository(s).create(
            meeting_id="m1", status=MeetingStatus.recording, calendar_event_id="evt-1"
        )

    results = []
    for _ in range(2):
        with db_session() as s:
            results.append(
                MeetingRepository(s).compare_and_set_status(
                    "m1", expected=[MeetingStatus.recording], new_status=MeetingStatus.processing
                )
            )
    assert results == [True, False]


def test_attempts_cascade_with_meeting():
    with db_session() as s:
        MeetingRepository(s).create(
            meeting_id="m2", status=MeetingStatus.failed, calendar_event_id="evt-2"
        )
        attempt_id = ProcessingAttemptRepository(s).start(
            meeting_id="m2", step=PipelineStep.fetch_metadata, attempt_no=1
        )

    with db_session() as s:
        repo = ProcessingAttemptRepository(s)
        assert repo.finish(attempt_id, outcome=AttemptOutcome.completed) is True
        assert repo.finish(attempt_id, outcome=AttemptOutcome.failed) is False

    with db_session() as s:
        assert MeetingRepository(s).delete_many(["m2"]) == 1

    with db_session() as s:
        assert s.get(ProcessingAttempt, attempt_id) is None
