"""
Репозитории (DAO слой).

Правила:
- Никакой бизнес-логики
- Только CRUD и запросы
- Запись статуса: атомарный UPDATE по одной строке (compare-and-set)
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import delete, desc, func, select, update
from sqlalchemy.orm import Session

from meeting_recorder.common.time import utc_now
from meeting_recorder.domain.enums import AttemptOutcome, MeetingStatus, PipelineStep

from .models import Meeting, ProcessingAttempt


# =============================================================================
# MEETING REPOSITORY
# =============================================================================
class MeetingRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, meeting_id: str) -> Meeting | None:
        return self.session.get(Meeting, meeting_id)

    def get_by_session_id(self, session_id: str) -> Meeting | None:
        stmt = select(Meeting).where(Meeting.provider_session_id == session_id)
        return self.session.execute(stmt).scalars().first()

    def get_by_calendar_event_id(self, calendar_event_id: str) -> Meeting | None:
        stmt = select(Meeting).where(Meeting.calendar_event_id == calendar_event_id)
        return self.session.execute(stmt).scalars().first()

    def find_latest_by_conference_id(self, conference_id: str) -> Meeting | None:
        """conference_id не уникален: берём самую свежую встречу."""
        stmt = (
            select(Meeting)
            .where(Meeting.conference_id == conference_id)
            .order_by(desc(Meeting.created_at))
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def create(self, *, meeting_id: str, status: MeetingStatus, **fields: Any) -> Meeting:
        now = utc_now()
        values = {"created_at": now, "updated_at": now, "status_changed_at": now, **fields}
        m = Meeting(id=meeting_id, status=status, **values)
        self.session.add(m)
        self.session.flush()
        return m

    def update_fields(self, meeting_id: str, **fields: Any) -> bool:
        """Обновление полей без смены статуса."""
        if not fields:
            return False
        stmt = (
            update(Meeting)
            .where(Meeting.id == meeting_id)
            .values(updated_at=utc_now(), **fields)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def compare_and_set_status(
        self,
        meeting_id: str,
        *,
        expected: Iterable[MeetingStatus],
        new_status: MeetingStatus,
        **fields: Any,
    ) -> bool:
        """
        Атомарная смена статуса: UPDATE ... WHERE id=? AND status IN (expected).
        True: строка обновлена (мы выиграли гонку), False: статус уже другой.
        """
        allowed = list(expected)
        if not allowed:
            return False
        now = utc_now()
        stmt = (
            update(Meeting)
            .where(Meeting.id == meeting_id, Meeting.status.in_(allowed))
            .values(status=new_status, status_changed_at=now, updated_at=now, **fields)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def list_stale(
        self,
        *,
        status: MeetingStatus,
        changed_before: datetime,
        limit: int,
    ) -> list[Meeting]:
        """Встречи в статусе status, который не менялся с changed_before."""
        stmt = (
            select(Meeting)
            .where(Meeting.status == status, Meeting.status_changed_at < changed_before)
            .order_by(Meeting.status_changed_at)
            .limit(max(1, int(limit)))
        )
        return list(self.session.execute(stmt).scalars().all())

    def list_recoverable_failed(
        self,
        *,
        failed_before: datetime,
        created_after: datetime,
        max_recoveries: int,
        limit: int,
    ) -> list[Meeting]:
        stmt = (
            select(Meeting)
            .where(
                Meeting.status == MeetingStatus.failed,
                Meeting.processing_started_at.is_not(None),
                Meeting.provider_session_id.is_not(None),
                Meeting.status_changed_at < failed_before,
                Meeting.created_at >= created_after,
                Meeting.recovery_count < max_recoveries,
            )
            .order_by(Meeting.status_changed_at)
            .limit(max(1, int(limit)))
        )
        return list(self.session.execute(stmt).scalars().all())

    def list_ids_for_cleanup(
        self,
        *,
        statuses: Iterable[MeetingStatus],
        created_before: datetime,
    ) -> list[str]:
        stmt = select(Meeting.id).where(
            Meeting.status.in_(list(statuses)),
            Meeting.created_at < created_before,
        )
        return list(self.session.execute(stmt).scalars().all())

    def delete_many(self, meeting_ids: list[str]) -> int:
        if not meeting_ids:
            return 0
        # попытки удаляются каскадом (ON DELETE CASCADE)
        stmt = (
            delete(Meeting)
            .where(Meeting.id.in_(meeting_ids))
            .execution_options(synchronize_session=False)
        )
        return int(self.session.execute(stmt).rowcount or 0)


# =============================================================================
# PROCESSING ATTEMPT REPOSITORY
# =============================================================================
class ProcessingAttemptRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def start(
        self,
        *,
        meeting_id: str,
        step: PipelineStep,
        attempt_no: int,
        run_id: str | None = None,
        context: dict | None = None,
    ) -> int:
        row = ProcessingAttempt(
            meeting_id=meeting_id,
            run_id=run_id,
            step=step,
            outcome=AttemptOutcome.started,
            attempt_no=attempt_no,
            context=context or {},
            started_at=utc_now(),
        )
        self.session.add(row)
        self.session.flush()
        return int(row.id)

    def finish(
        self,
        attempt_id: int,
        *,
        outcome: AttemptOutcome,
        error_summary: str | None = None,
        context: dict | None = None,
    ) -> bool:
        """
        Финализация попытки. Только из started: повторная финализация no-op.
        """
        values: dict[str, Any] = {
            "outcome": outcome,
            "error_summary": error_summary,
            "finished_at": utc_now(),
        }
        if context is not None:
            values["context"] = context
        stmt = (
            update(ProcessingAttempt)
            .where(
                ProcessingAttempt.id == attempt_id,
                ProcessingAttempt.outcome == AttemptOutcome.started,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def fail_dangling(self, meeting_id: str, *, reason: str) -> int:
        """Попытки, оставшиеся в started после падения процесса."""
        stmt = (
            update(ProcessingAttempt)
            .where(
                ProcessingAttempt.meeting_id == meeting_id,
                ProcessingAttempt.outcome == AttemptOutcome.started,
            )
            .values(outcome=AttemptOutcome.failed, error_summary=reason, finished_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return int(self.session.execute(stmt).rowcount or 0)

    def max_attempt_no(self, meeting_id: str, step: PipelineStep) -> int:
        """Последний номер попытки шага (нумерация сквозная между прогонами)."""
        stmt = select(func.max(ProcessingAttempt.attempt_no)).where(
            ProcessingAttempt.meeting_id == meeting_id,
            ProcessingAttempt.step == step,
        )
        return int(self.session.execute(stmt).scalar() or 0)

    def list_by_meeting(
        self,
        meeting_id: str,
        *,
        step: PipelineStep | None = None,
    ) -> list[ProcessingAttempt]:
        stmt = select(ProcessingAttempt).where(ProcessingAttempt.meeting_id == meeting_id)
        if step is not None:
            stmt = stmt.where(ProcessingAttempt.step == step)
        stmt = stmt.order_by(ProcessingAttempt.id)
        return list(self.session.execute(stmt).scalars().all())

    def delete_older_than(self, cutoff: datetime) -> int:
        stmt = (
            delete(ProcessingAttempt)
            .where(ProcessingAttempt.started_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return int(self.session.execute(stmt).rowcount or 0)
