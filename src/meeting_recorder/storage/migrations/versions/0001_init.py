"""
Инициальная миграция.

Создаёт таблицы:
- meetings
- processing_attempts (каскадно удаляются вместе со встречей)
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_MEETING_STATUS = (
    "started",
    "bot_joining",
    "bot_joined",
    "recording",
    "processing",
    "completed",
    "failed",
)
_BOT_JOIN_STATUS = ("pending", "joining", "joined", "failed")
_PIPELINE_STEP = (
    "fetch_metadata",
    "validate_source",
    "transfer_binary",
    "generate_document",
    "notify",
)
_ATTEMPT_OUTCOME = ("started", "completed", "failed")


def upgrade() -> None:
    op.create_table(
        "meetings",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("calendar_event_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("conference_id", sa.String(length=255), nullable=True),
        sa.Column("provider_session_id", sa.String(length=255), nullable=True, unique=True),
        sa.Column("title", sa.String(length=500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("meeting_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("meeting_ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.Enum(*_MEETING_STATUS, name="meetingstatus"), nullable=False),
        sa.Column(
            "bot_join_status", sa.Enum(*_BOT_JOIN_STATUS, name="botjoinstatus"), nullable=False
        ),
        sa.Column("recording_url", sa.Text(), nullable=True),
        sa.Column("recording_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recording_ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transcript", sa.JSON(), nullable=True),
        sa.Column("recording_file_id", sa.String(length=255), nullable=True),
        sa.Column("recording_file_url", sa.Text(), nullable=True),
        sa.Column("recording_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("transcript_doc_id", sa.String(length=255), nullable=True),
        sa.Column("transcript_doc_url", sa.Text(), nullable=True),
        sa.Column("chat_message_id", sa.String(length=255), nullable=True),
        sa.Column("chat_channel", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.JSON(), nullable=True),
    )
    op.create_index(
        "ix_meetings_status_changed", "meetings", ["status", "status_changed_at"], unique=False
    )
    op.create_index("ix_meetings_conference_id", "meetings", ["conference_id"], unique=False)

    op.create_table(
        "processing_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "meeting_id",
            sa.String(length=64),
            sa.ForeignKey("meetings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("run_id", sa.String(length=64), nullable=True),
        sa.Column("step", sa.Enum(*_PIPELINE_STEP, name="pipelinestep"), nullable=False),
        sa.Column("outcome", sa.Enum(*_ATTEMPT_OUTCOME, name="attemptoutcome"), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("context", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_attempts_meeting_step",
        "processing_attempts",
        ["meeting_id", "step", "attempt_no"],
        unique=False,
    )
    op.create_index("ix_attempts_started_at", "processing_attempts", ["started_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_attempts_started_at", table_name="processing_attempts")
    op.drop_index("ix_attempts_meeting_step", table_name="processing_attempts")
    op.drop_table("processing_attempts")
    op.drop_index("ix_meetings_conference_id", table_name="meetings")
    op.drop_index("ix_meetings_status_changed", table_name="meetings")
    op.drop_table("meetings")

    op.execute("DROP TYPE IF EXISTS meetingstatus")
    op.execute("DROP TYPE IF EXISTS botjoinstatus")
    op.execute("DROP TYPE IF EXISTS pipelinestep")
    op.execute("DROP TYPE IF EXISTS attemptoutcome")
