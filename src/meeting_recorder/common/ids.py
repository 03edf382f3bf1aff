"""
Генерация идентификаторов.

Назначение:
- meeting_id
- идентификаторы фоновых прогонов (для сквозных логов)
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime


def new_meeting_id(prefix: str = "mtg") -> str:
    """
    Идентификатор встречи.
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    rnd = secrets.token_hex(5)
    return f"{prefix}_{ts}_{rnd}"


def new_run_id(prefix: str = "run") -> str:
    """Идентификатор одного прогона пайплайна."""
    return f"{prefix}_{secrets.token_hex(8)}"


def fallback_calendar_event_id(session_id: str) -> str:
    """
    Синтетический calendar_event_id для встречи, о которой мы узнали
    только из вебхука бота (без события календаря).
    """
    return f"chatterbox-{session_id}"
