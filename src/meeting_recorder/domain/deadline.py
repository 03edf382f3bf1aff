"""
Окно доступности ссылки на запись.

Провайдер выдаёт подписанную ссылку, которая живёт несколько минут
с момента события "запись завершена". Всё, что упало после закрытия окна,
считается фатальным: повтор с той же ссылкой бессмыслен.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from meeting_recorder.common.time import as_utc


@dataclass(frozen=True)
class LinkWindow:
    issued_at: datetime
    expires_at: datetime
    urgent_threshold_sec: int = 120

    @classmethod
    def from_issue(cls, issued_at: datetime, *, ttl_sec: int, urgent_sec: int = 120) -> LinkWindow:
        issued = as_utc(issued_at)
        return cls(
            issued_at=issued,
            expires_at=issued + timedelta(seconds=int(ttl_sec)),
            urgent_threshold_sec=int(urgent_sec),
        )

    def remaining_sec(self, now: datetime) -> float:
        return (self.expires_at - as_utc(now)).total_seconds()

    def is_expired(self, now: datetime) -> bool:
        return self.remaining_sec(now) <= 0

    def is_urgent(self, now: datetime) -> bool:
        return self.remaining_sec(now) < self.urgent_threshold_sec

    def describe(self, now: datetime) -> dict:
        remaining = self.remaining_sec(now)
        return {
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "remaining_sec": int(max(0.0, remaining)),
            "expired": self.is_expired(now),
            "urgent": self.is_urgent(now),
        }
