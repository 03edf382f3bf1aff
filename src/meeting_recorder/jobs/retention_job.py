"""
Фоновая job ретеншна.

Назначение:
- удалять брошенные встречи (failed / started) старше RETENTION_MEETINGS_DAYS
  вместе с их попытками (каскад)
- удалять журнал попыток старше RETENTION_ATTEMPTS_DAYS
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.common.metrics import record_retention_result
from meeting_recorder.common.time import utc_now
from meeting_recorder.domain.enums import MeetingStatus
from meeting_recorder.storage.db import db_session
from meeting_recorder.storage.repositories import MeetingRepository, ProcessingAttemptRepository

log = get_project_logger()

CLEANUP_STATUSES = (MeetingStatus.failed, MeetingStatus.started)


@dataclass
class RetentionResult:
    meetings_deleted: int = 0
    attempts_deleted: int = 0


def run(*, clock: Callable[[], datetime] = utc_now) -> RetentionResult | None:
    s = get_settings()
    now = clock()
    log.info("retention_job_started")
    result = RetentionResult()
    try:
        with db_session() as sess:
            meetings = MeetingRepository(sess)
            ids = meetings.list_ids_for_cleanup(
                statuses=CLEANUP_STATUSES,
                created_before=now - timedelta(days=s.retention_meetings_days),
            )
            result.meetings_deleted = meetings.delete_many(ids)

        with db_session() as sess:
            result.attempts_deleted = ProcessingAttemptRepository(sess).delete_older_than(
                now - timedelta(days=s.retention_attempts_days)
            )
    except Exception as e:
        log.warning("retention_job_skipped", extra={"payload": {"err": str(e)[:300]}})
        return None

    record_retention_result(meetings=result.meetings_deleted, attempts=result.attempts_deleted)
    log.info(
        "retention_job_finished",
        extra={
            "payload": {
                "meetings_deleted": result.meetings_deleted,
                "attempts_deleted": result.attempts_deleted,
            }
        },
    )
    return result
