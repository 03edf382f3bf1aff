"""
Адаптер ChatterBox (бот, записывающий Google Meet).

Назначение:
- отправка бота во встречу (join)
- получение данных сессии: ссылка на запись, транскрипт, таймстемпы
- принудительный выход бота
- классификация ошибок: истёкший ресурс / временный сбой
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import requests

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.errors import ErrCode, ProviderError
from meeting_recorder.common.http import error_from_exception, raise_for_status
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.connectors.base import ProviderGateway, SessionData, TranscriptEntry

log = get_project_logger()


class ChatterBoxConnector(ProviderGateway):
    def __init__(
        self,
        *,
        base_url: str | None = None,
        leave_base_url: str | None = None,
        api_key: str | None = None,
        timeout_sec: int | None = None,
    ) -> None:
        s = get_settings()
        self.base_url = (base_url or s.chatterbox_api_base or "").rstrip("/")
        self.leave_base_url = (leave_base_url or s.chatterbox_leave_api_base or "").rstrip("/")
        self.api_key = (api_key or s.chatterbox_api_key or "").strip()
        self.timeout_sec = int(timeout_sec if timeout_sec is not None else s.chatterbox_timeout_sec)
        self.platform = s.chatterbox_platform
        self.language = s.chatterbox_language
        self.bot_name = s.chatterbox_bot_name

    def _request(
        self,
        method: str,
        url: str,
        *,
        payload: dict[str, Any] | None = None,
        what: str,
    ) -> dict:
        if not self.api_key:
            raise ProviderError(ErrCode.PROVIDER_ERROR, "CHATTERBOX_API_KEY не настроен")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        try:
            resp = requests.request(
                method=method.upper(),
                url=url,
                json=payload,
                headers=headers,
                timeout=self.timeout_sec,
            )
        except requests.RequestException as e:
            raise error_from_exception(e, what=what) from e
        raise_for_status(resp, what=what)

        if not resp.content:
            return {}
        try:
            data = resp.json()
            return data if isinstance(data, dict) else {}
        except ValueError:
            return {}

    def join_meeting(
        self, *, conference_id: str, bot_name: str | None = None, webhook_url: str | None = None
    ) -> str:
        payload: dict[str, Any] = {
            "platform": self.platform,
            "meetingId": conference_id,
            "botName": bot_name or self.bot_name,
            "language": self.language,
        }
        if webhook_url:
            payload["webhookUrl"] = webhook_url
        data = self._request("POST", f"{self.base_url}/join", payload=payload, what="chatterbox_join")
        session_id = str(data.get("sessionId") or "").strip()
        if not session_id:
            raise ProviderError(
                ErrCode.PROVIDER_ERROR,
                "ChatterBox не вернул sessionId",
                details={"conference_id": conference_id},
            )
        log.info(
            "chatterbox_join_ok",
            extra={"payload": {"conference_id": conference_id, "session_id": session_id}},
        )
        return session_id

    def get_session_data(self, session_id: str) -> SessionData:
        data = self._request(
            "GET", f"{self.base_url}/session/{session_id}", what="chatterbox_session"
        )
        result = parse_session_payload(session_id, data)
        log.info(
            "chatterbox_session_fetched",
            extra={
                "payload": {
                    "session_id": session_id,
                    "has_recording": bool(result.recording_url),
                    "transcript_entries": len(result.transcript),
                }
            },
        )
        return result

    def force_leave(self, session_id: str) -> None:
        self._request(
            "POST", f"{self.leave_base_url}/session/{session_id}/leave", what="chatterbox_leave"
        )
        log.info("chatterbox_leave_ok", extra={"payload": {"session_id": session_id}})

    def health(self) -> bool:
        return bool(self.base_url and self.api_key)


# =============================================================================
# РАЗБОР ОТВЕТА
# =============================================================================
def parse_timestamp(value: Any) -> datetime | None:
    """
    Таймстемп провайдера: unix-секунды, unix-миллисекунды или ISO-строка.
    """
    if value is None or value == "":
        return None
    if isinstance(value, int | float):
        ts = float(value)
        if ts > 1e12:
            ts = ts / 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    raw = str(value).strip()
    try:
        return parse_timestamp(float(raw))
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def parse_session_payload(session_id: str, data: dict[str, Any]) -> SessionData:
    entries: list[TranscriptEntry] = []
    raw_transcript = data.get("transcript")
    if isinstance(raw_transcript, list):
        for item in raw_transcript:
            if not isinstance(item, dict):
                continue
            entries.append(
                TranscriptEntry.from_dict(
                    {
                        "speaker": item.get("speaker"),
                        "text": item.get("text"),
                        "time_start_ms": item.get("timeStart"),
                        "time_end_ms": item.get("timeEnd"),
                    }
                )
            )

    return SessionData(
        session_id=session_id,
        recording_url=(str(data.get("recordingLink") or "").strip() or None),
        transcript=entries,
        started_at=parse_timestamp(data.get("startTimestamp")),
        ended_at=parse_timestamp(data.get("endTimestamp")),
        conference_id=(str(data.get("meetingId") or "").strip() or None),
    )
