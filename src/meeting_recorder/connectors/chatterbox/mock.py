"""
Mock-коннектор ChatterBox.

Назначение:
- локальные прогоны без внешнего провайдера (CHATTERBOX_MODE=mock)
- детерминированные данные сессии для отладки пайплайна
"""

from __future__ import annotations

from dataclasses import dataclass, field

from meeting_recorder.common.errors import SourceExpiredError
from meeting_recorder.common.time import utc_now
from meeting_recorder.connectors.base import ProviderGateway, SessionData, TranscriptEntry


@dataclass
class MockChatterBoxConnector(ProviderGateway):
    recording_url: str | None = "https://example.invalid/recordings/mock.mkv"
    sessions: dict[str, SessionData] = field(default_factory=dict)
    joined: list[str] = field(default_factory=list)
    left: list[str] = field(default_factory=list)
    _seq: int = 0

    def join_meeting(
        self, *, conference_id: str, bot_name: str | None = None, webhook_url: str | None = None
    ) -> str:
        self._seq += 1
        session_id = f"mock-session-{self._seq}"
        self.joined.append(conference_id)
        now = utc_now()
        self.sessions[session_id] = SessionData(
            session_id=session_id,
            recording_url=self.recording_url,
            transcript=[
                TranscriptEntry(speaker="spk-1", text="Добрый день.", time_start_ms=0),
                TranscriptEntry(speaker="spk-2", text="Начинаем.", time_start_ms=4200),
            ],
            started_at=now,
            ended_at=now,
            conference_id=conference_id,
        )
        return session_id

    def get_session_data(self, session_id: str) -> SessionData:
        data = self.sessions.get(session_id)
        if data is None:
            raise SourceExpiredError("mock: сессия не найдена", {"session_id": session_id})
        return data

    def force_leave(self, session_id: str) -> None:
        self.left.append(session_id)

    def health(self) -> bool:
        return True
