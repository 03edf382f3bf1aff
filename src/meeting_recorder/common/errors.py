"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для HTTP и логов
- классификация ошибок внешних вызовов: источник протух / временный сбой
- итоговая ошибка шага пайплайна с историей попыток
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"

    # Провайдеры
    PROVIDER_ERROR = "provider_error"
    SOURCE_EXPIRED = "source_expired"
    PROVIDER_TRANSIENT = "provider_transient"
    SINK_ERROR = "sink_error"
    NOTIFIER_ERROR = "notifier_error"

    # Пайплайн
    STEP_FAILED = "step_failed"
    DEADLINE_EXCEEDED = "deadline_exceeded"

    # Инфра/хранилища
    DB_ERROR = "db_error"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Не авторизован", details: dict | None = None) -> None:
        super().__init__(ErrCode.UNAUTHORIZED, message, details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class ConflictError(AppError):
    def __init__(self, message: str = "Конфликт", details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFLICT, message, details)


class ProviderError(AppError):
    def __init__(self, code: str, message: str, details: dict | None = None) -> None:
        super().__init__(code, message, details)


class SourceExpiredError(ProviderError):
    """
    Внешний ресурс недоступен навсегда (403/404/410): ссылка протухла или удалена.
    Ретраи разрешены бюджетом шага, но успеха от них не ждём.
    """

    def __init__(self, message: str = "Источник недоступен или истёк", details: dict | None = None) -> None:
        super().__init__(ErrCode.SOURCE_EXPIRED, message, details)


class TransientProviderError(ProviderError):
    """Таймаут, обрыв соединения, 5xx/429: имеет смысл повторить."""

    def __init__(self, message: str = "Временная ошибка провайдера", details: dict | None = None) -> None:
        super().__init__(ErrCode.PROVIDER_TRANSIENT, message, details)


# =============================================================================
# ОШИБКА ШАГА ПАЙПЛАЙНА
# =============================================================================
@dataclass
class AttemptRecord:
    attempt_no: int
    error: str | None
    error_type: str | None


@dataclass
class StepFailedError(AppError):
    """
    Шаг исчерпал попытки.
    - step: имя шага
    - attempts: история неудачных попыток (по порядку)
    - cause: последняя ошибка
    - fatal: ретраить дальше бессмысленно (истёк дедлайн / источник протух)
    """

    step: str = ""
    attempts: list[AttemptRecord] = field(default_factory=list)
    cause: BaseException | None = None
    fatal: bool = False

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def last_error(self) -> str | None:
        return self.attempts[-1].error if self.attempts else None

    @property
    def expired(self) -> bool:
        return is_source_expired(self.cause)

    @property
    def retryable(self) -> bool:
        return not self.fatal

    def to_details(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "attempts": self.attempt_count,
            "fatal": self.fatal,
            "expired": self.expired,
            "history": [
                {"attempt_no": a.attempt_no, "error": a.error, "error_type": a.error_type}
                for a in self.attempts
            ],
            **(self.details or {}),
        }

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"


def is_source_expired(err: BaseException | None) -> bool:
    return isinstance(err, SourceExpiredError)


def short_error(err: BaseException, limit: int = 300) -> str:
    """Короткое описание ошибки для attempts/логов."""
    if isinstance(err, AppError):
        return f"{err.code}: {err.message}"[:limit]
    return f"{type(err).__name__}: {err}"[:limit]
