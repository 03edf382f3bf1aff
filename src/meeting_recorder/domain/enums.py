"""
Доменные перечисления (enum).

Используются во всей системе:
- жизненный цикл встречи
- статус подключения бота
- шаги пайплайна артефактов и исходы попыток
- типы событий от провайдера бота
"""

from __future__ import annotations

import enum


class MeetingStatus(str, enum.Enum):
    """
    Статус встречи (монотонный, кроме recovery-перехода failed -> processing).
    """

    started = "started"
    bot_joining = "bot_joining"
    bot_joined = "bot_joined"
    recording = "recording"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class BotJoinStatus(str, enum.Enum):
    """
    Статус подключения бота к конференции.
    """

    pending = "pending"
    joining = "joining"
    joined = "joined"
    failed = "failed"


class PipelineStep(str, enum.Enum):
    """
    Шаги пайплайна артефактов (строго по порядку).
    """

    fetch_metadata = "fetch_metadata"
    validate_source = "validate_source"
    transfer_binary = "transfer_binary"
    generate_document = "generate_document"
    notify = "notify"


class AttemptOutcome(str, enum.Enum):
    """
    Исход одной попытки шага.
    """

    started = "started"
    completed = "completed"
    failed = "failed"


class WebhookEventType(str, enum.Enum):
    """
    Типы событий вебхука бота. Закрытый список: всё остальное игнорируется.
    """

    started = "started"
    transcript = "transcript"
    finished = "finished"

    @classmethod
    def parse(cls, raw: str | None) -> WebhookEventType | None:
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            return None
