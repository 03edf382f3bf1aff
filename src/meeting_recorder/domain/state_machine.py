"""
Машина состояний встречи.

Назначение:
- Централизованная таблица допустимых переходов статуса
- Монотонность: статус не откатывается назад
- Единственное исключение: failed -> processing (только recovery)
- Порядок шагов пайплайна
"""

from __future__ import annotations

from dataclasses import dataclass

from .enums import MeetingStatus, PipelineStep

S = MeetingStatus


# =============================================================================
# ТАБЛИЦА ПЕРЕХОДОВ
# =============================================================================
# Пропуск промежуточных статусов вперёд допустим: сигнал о подключении бота
# может потеряться, а событие о конце записи прийти.
_TRANSITIONS: dict[MeetingStatus, frozenset[MeetingStatus]] = {
    S.started: frozenset({S.bot_joining, S.bot_joined, S.recording, S.processing, S.failed}),
    S.bot_joining: frozenset({S.bot_joined, S.recording, S.processing, S.failed}),
    S.bot_joined: frozenset({S.recording, S.processing, S.failed}),
    S.recording: frozenset({S.processing, S.failed}),
    S.processing: frozenset({S.completed, S.failed}),
    S.completed: frozenset(),
    S.failed: frozenset(),
}

_RECOVERY_EDGES: frozenset[tuple[MeetingStatus, MeetingStatus]] = frozenset(
    {(S.failed, S.processing)}
)

# Повторное событие "запись завершена" в этих статусах: no-op
FINISHED_NOOP_STATUSES: frozenset[MeetingStatus] = frozenset(
    {S.processing, S.completed, S.failed}
)

# Ручной retry запрещён из этих статусов
RETRY_FORBIDDEN_STATUSES: frozenset[MeetingStatus] = frozenset({S.processing, S.completed})


# =============================================================================
# РЕЗУЛЬТАТ ПРОВЕРКИ
# =============================================================================
@dataclass
class TransitionResult:
    ok: bool
    source: MeetingStatus
    target: MeetingStatus
    reason: str | None = None


def check_transition(
    source: MeetingStatus,
    target: MeetingStatus,
    *,
    allow_recovery: bool = False,
) -> TransitionResult:
    """
    Правила:
    - source == target → не переход (идемпотентная запись), ok=False
    - прямые переходы из таблицы
    - failed -> processing только с allow_recovery
    """
    src = MeetingStatus(source)
    dst = MeetingStatus(target)

    if src == dst:
        return TransitionResult(ok=False, source=src, target=dst, reason="same_status")
    if dst in _TRANSITIONS[src]:
        return TransitionResult(ok=True, source=src, target=dst)
    if (src, dst) in _RECOVERY_EDGES:
        if allow_recovery:
            return TransitionResult(ok=True, source=src, target=dst, reason="recovery")
        return TransitionResult(ok=False, source=src, target=dst, reason="recovery_not_allowed")
    return TransitionResult(ok=False, source=src, target=dst, reason="not_allowed")


def sources_for(target: MeetingStatus, *, allow_recovery: bool = False) -> list[MeetingStatus]:
    """
    Все статусы, из которых допустим переход в target.
    Используется как условие атомарного compare-and-set в хранилище.
    """
    dst = MeetingStatus(target)
    return [
        src
        for src in MeetingStatus
        if check_transition(src, dst, allow_recovery=allow_recovery).ok
    ]


# =============================================================================
# ПОРЯДОК ШАГОВ
# =============================================================================
def step_order() -> list[PipelineStep]:
    """Порядок, в котором оркестратор выполняет шаги."""
    return [
        PipelineStep.fetch_metadata,
        PipelineStep.validate_source,
        PipelineStep.transfer_binary,
        PipelineStep.generate_document,
        PipelineStep.notify,
    ]
