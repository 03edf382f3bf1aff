"""
Утилиты времени.

Назначение:
- единый формат времени (UTC, tz-aware)
- нормализация naive-значений, которые отдаёт SQLite
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Текущее время в UTC (datetime).
    """
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Приводит datetime к tz-aware UTC.
    SQLite не хранит таймзону, поэтому naive трактуем как UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_unix(ts: float | int | None) -> datetime | None:
    """Unix-секунды (формат вебхуков провайдера) -> datetime UTC."""
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=UTC)


def age_seconds(since: datetime | None, *, now: datetime | None = None) -> float | None:
    if since is None:
        return None
    return ((now or utc_now()) - as_utc(since)).total_seconds()
