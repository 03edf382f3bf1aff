"""
ORM-модели базы данных.

Назначение:
- Хранение состояния встреч и ссылок на артефакты
- Журнал попыток шагов пайплайна (processing_attempts)
- По встрече и её попыткам диагностика возможна без логов
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from meeting_recorder.common.time import utc_now
from meeting_recorder.domain.enums import (
    AttemptOutcome,
    BotJoinStatus,
    MeetingStatus,
    PipelineStep,
)


# =============================================================================
# BASE
# =============================================================================
class Base(DeclarativeBase):
    pass


# =============================================================================
# MEETING
# =============================================================================
class Meeting(Base):
    """
    Основная сущность: встреча и её записи.
    """

    __tablename__ = "meetings"
    __table_args__ = (
        Index("ix_meetings_status_changed", "status", "status_changed_at"),
        Index("ix_meetings_conference_id", "conference_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Ключи корреляции
    calendar_event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    conference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_session_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )

    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    meeting_ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    status: Mapped[MeetingStatus] = mapped_column(Enum(MeetingStatus), nullable=False)
    bot_join_status: Mapped[BotJoinStatus] = mapped_column(
        Enum(BotJoinStatus), default=BotJoinStatus.pending, nullable=False
    )

    # Данные записи от провайдера
    recording_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    recording_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    recording_ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    transcript: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # Артефакты (заполняются по успеху шага)
    recording_file_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recording_file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    recording_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    transcript_doc_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transcript_doc_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    chat_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    chat_channel: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Таймстемпы жизненного цикла
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )
    status_changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    recovery_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # {"step", "detail", "attempts", "fatal", "history", ...}
    last_error: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    attempts: Mapped[list[ProcessingAttempt]] = relationship(
        back_populates="meeting",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProcessingAttempt.id",
    )


# =============================================================================
# PROCESSING ATTEMPTS
# =============================================================================
class ProcessingAttempt(Base):
    """
    Одна попытка одного шага. Финализируется ровно один раз.
    """

    __tablename__ = "processing_attempts"
    __table_args__ = (
        Index("ix_attempts_meeting_step", "meeting_id", "step", "attempt_no"),
        Index("ix_attempts_started_at", "started_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    meeting_id: Mapped[str] = mapped_column(
        ForeignKey("meetings.id", ondelete="CASCADE"), nullable=False
    )
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    step: Mapped[PipelineStep] = mapped_column(Enum(PipelineStep), nullable=False)
    outcome: Mapped[AttemptOutcome] = mapped_column(Enum(AttemptOutcome), nullable=False)
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False)

    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    meeting: Mapped[Meeting] = relationship(back_populates="attempts")
