"""
HTTP роуты вебхуков.

- POST /webhook/meeting-started: событие календаря (встреча + бот)
- POST /webhook/chatterbox: события бота: started / transcript / finished

Ответ отдаём сразу: обработка записи идёт в фоне.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from apps.api_gateway.deps import runtime_dep, webhook_auth_dep
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.contracts.http_api import (
    MeetingStartedResponse,
    MeetingStartedWebhook,
    ProviderWebhook,
    WebhookAck,
)
from meeting_recorder.services.runtime import Runtime
from meeting_recorder.services.webhook_service import CalendarMeeting

log = get_project_logger()

router = APIRouter(dependencies=[Depends(webhook_auth_dep)])


@router.post(
    "/webhook/meeting-started",
    response_model=MeetingStartedResponse,
    status_code=status.HTTP_201_CREATED,
)
def meeting_started(
    req: MeetingStartedWebhook,
    rt: Runtime = Depends(runtime_dep),
) -> MeetingStartedResponse:
    m = rt.ingest.handle_meeting_started(
        CalendarMeeting(
            calendar_event_id=req.id,
            conference_id=req.conference_data.conference_id,
            title=req.summary,
            description=req.description,
            starts_at=req.start.date_time if req.start else None,
            ends_at=req.end.date_time if req.end else None,
        )
    )
    return MeetingStartedResponse(
        meeting_id=m.id,
        status=m.status.value,
        bot_join_status=m.bot_join_status.value,
        session_id=m.provider_session_id,
    )


@router.post("/webhook/chatterbox", response_model=WebhookAck)
def chatterbox_event(
    req: ProviderWebhook,
    rt: Runtime = Depends(runtime_dep),
) -> WebhookAck:
    res = rt.ingest.handle_provider_event(req.type, req.payload)
    return WebhookAck(
        event_type=res.event_type,
        action=res.action,
        meeting_id=res.meeting_id,
        session_id=res.session_id,
        link_window=res.link_window,
    )
