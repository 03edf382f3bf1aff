"""
Management API встреч.

- GET  /api/meetings/{meeting_id}/status: встреча, попытки, время обработки
- POST /api/meetings/{meeting_id}/retry: повтор (не из completed/processing)
- POST /api/meetings/{meeting_id}/process: принудительный прогон

Авторизация: Depends(auth_dep)
"""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, status

from apps.api_gateway.deps import auth_dep, runtime_dep
from meeting_recorder.common.errors import ConflictError
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.contracts.http_api import (
    ActionAccepted,
    AttemptView,
    ForceProcessRequest,
    MeetingStatusResponse,
    MeetingView,
)
from meeting_recorder.domain.enums import MeetingStatus
from meeting_recorder.services.runtime import Runtime

log = get_project_logger()

router = APIRouter(prefix="/api/meetings", dependencies=[Depends(auth_dep)])


@router.get("/{meeting_id}/status", response_model=MeetingStatusResponse)
def meeting_status(meeting_id: str, rt: Runtime = Depends(runtime_dep)) -> MeetingStatusResponse:
    view = rt.pipeline.get_status(meeting_id)
    m = view.meeting
    return MeetingStatusResponse(
        meeting=MeetingView(
            id=m.id,
            calendar_event_id=m.calendar_event_id,
            conference_id=m.conference_id,
            session_id=m.provider_session_id,
            title=m.title,
            status=m.status.value,
            bot_join_status=m.bot_join_status.value,
            recording_file_url=m.recording_file_url,
            transcript_doc_url=m.transcript_doc_url,
            chat_message_id=m.chat_message_id,
            created_at=m.created_at,
            status_changed_at=m.status_changed_at,
            processing_started_at=m.processing_started_at,
            processing_completed_at=m.processing_completed_at,
            recovery_count=m.recovery_count,
            last_error=m.last_error,
        ),
        attempts=[
            AttemptView(
                step=a.step.value,
                outcome=a.outcome.value,
                attempt_no=a.attempt_no,
                error_summary=a.error_summary,
                context=a.context or {},
                started_at=a.started_at,
                finished_at=a.finished_at,
            )
            for a in view.attempts
        ],
        processing_time_sec=view.processing_time_sec,
    )


@router.post(
    "/{meeting_id}/retry",
    response_model=ActionAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
def retry_meeting(meeting_id: str, rt: Runtime = Depends(runtime_dep)) -> ActionAccepted:
    # 404/409/400 отдаём синхронно, сам прогон в фоне
    rt.pipeline.check_retry_allowed(meeting_id)
    fut = rt.runner.submit(f"retry:{meeting_id}", rt.pipeline.retry_processing, meeting_id)
    log.info("manual_retry_accepted", extra={"payload": {"meeting_id": meeting_id}})
    return ActionAccepted(meeting_id=meeting_id, action="retry", accepted=fut is not None)


@router.post(
    "/{meeting_id}/process",
    response_model=ActionAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
def force_process_meeting(
    meeting_id: str,
    req: ForceProcessRequest | None = Body(default=None),
    rt: Runtime = Depends(runtime_dep),
) -> ActionAccepted:
    view = rt.pipeline.get_status(meeting_id)
    if view.meeting.status == MeetingStatus.completed:
        raise ConflictError("Встреча уже обработана", {"meeting_id": meeting_id})
    fut = rt.runner.submit(
        f"force_process:{meeting_id}",
        rt.pipeline.force_process,
        meeting_id,
        recording_url=req.recording_url if req else None,
    )
    log.info("force_process_accepted", extra={"payload": {"meeting_id": meeting_id}})
    return ActionAccepted(meeting_id=meeting_id, action="process", accepted=fut is not None)
