"""
Базовые интерфейсы коннекторов (провайдер бота для встреч).

Назначение:
- стандартизировать адаптеры к провайдеру записи
- отделить "как получаем данные сессии" от "что делаем дальше в пайплайне"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass
class TranscriptEntry:
    """
    Реплика транскрипта. Время: смещение от начала записи в миллисекундах.
    """

    speaker: str
    text: str
    time_start_ms: int | None = None
    time_end_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "speaker": self.speaker,
            "text": self.text,
            "time_start_ms": self.time_start_ms,
            "time_end_ms": self.time_end_ms,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TranscriptEntry:
        return cls(
            speaker=str(raw.get("speaker") or "Unknown"),
            text=str(raw.get("text") or ""),
            time_start_ms=_opt_int(raw.get("time_start_ms")),
            time_end_ms=_opt_int(raw.get("time_end_ms")),
        )


@dataclass
class SessionData:
    """
    Данные сессии бота после встречи.
    recording_url: подписанная ссылка с ограниченным сроком жизни.
    """

    session_id: str
    recording_url: str | None = None
    transcript: list[TranscriptEntry] = field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    conference_id: str | None = None


class ProviderGateway(Protocol):
    """
    Контракт провайдера бота.
    """

    def join_meeting(
        self, *, conference_id: str, bot_name: str | None = None, webhook_url: str | None = None
    ) -> str:
        """Отправить бота во встречу, вернуть session_id."""
        ...

    def get_session_data(self, session_id: str) -> SessionData:
        """Ссылка на запись, транскрипт и таймстемпы сессии."""
        ...

    def force_leave(self, session_id: str) -> None:
        """Принудительно вывести бота из встречи."""
        ...

    def health(self) -> bool:
        ...


def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None
