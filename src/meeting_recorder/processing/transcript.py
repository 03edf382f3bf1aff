"""
Рендеринг транскрипта встречи в текстовый документ.

Назначение:
- группировка реплик по непрерывным отрезкам одного спикера
- метки времени [MM:SS] / [HH:MM:SS] от начала записи
- стабильные псевдонимы "Speaker N" в порядке первого появления
- шапка/подвал документа и статистика транскрипта

Чистые функции без I/O: всё, что зависит от времени, передаётся аргументом.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from meeting_recorder.common.time import as_utc
from meeting_recorder.connectors.base import TranscriptEntry

RULE = "━" * 120
NO_TRANSCRIPT = "⚠️ No transcript data available"


@dataclass
class TranscriptStats:
    total_entries: int
    total_words: int
    speakers: int
    duration_sec: int


@dataclass
class TranscriptMeta:
    """Поля встречи, нужные для шапки документа."""

    title: str
    conference_id: str | None = None
    description: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    recording_started_at: datetime | None = None
    recording_ended_at: datetime | None = None


def document_title(title: str | None) -> str:
    return f"Meeting Transcript - {title or 'Untitled meeting'}"


def recording_file_name(title: str | None) -> str:
    return f"Meeting Recording - {title or 'Untitled meeting'}.mkv"


def format_offset(time_start_ms: int | None) -> str:
    """Смещение от начала записи: MM:SS, с часами HH:MM:SS."""
    if not time_start_ms or time_start_ms < 0:
        return "00:00"
    total = int(time_start_ms) // 1000
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


def format_duration(start: datetime | None, end: datetime | None) -> str:
    if start is None or end is None:
        return "Unknown duration"
    total = int((as_utc(end) - as_utc(start)).total_seconds())
    if total <= 0:
        return "Unknown duration"
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def _fmt_long(value: datetime | None) -> str:
    dt = as_utc(value)
    return dt.strftime("%A, %B %d, %Y %H:%M UTC") if dt else "Unknown"


def _fmt_short(value: datetime | None) -> str:
    dt = as_utc(value)
    return dt.strftime("%H:%M UTC") if dt else "Unknown"


def speaker_aliases(entries: Iterable[TranscriptEntry]) -> dict[str, str]:
    """Исходный id спикера -> "Speaker N" (пустые реплики не считаются)."""
    aliases: dict[str, str] = {}
    for e in entries:
        if not (e.text or "").strip():
            continue
        if e.speaker not in aliases:
            aliases[e.speaker] = f"Speaker {len(aliases) + 1}"
    return aliases


def render_header(meta: TranscriptMeta, *, generated_at: datetime) -> str:
    lines = [
        "📝 MEETING TRANSCRIPT",
        "",
        f"Meeting: {meta.title}",
        f"Date: {_fmt_long(meta.started_at)}",
        f"End Time: {_fmt_short(meta.ended_at)}",
        f"Duration: {format_duration(meta.recording_started_at, meta.recording_ended_at)}",
        f"Conference ID: {meta.conference_id or 'Unknown'}",
        "",
    ]
    if meta.description:
        lines.extend([f"Description: {meta.description}", ""])
    lines.extend([f"Generated: {_fmt_long(generated_at)}", "", RULE, ""])
    return "\n".join(lines)


def render_body(entries: list[TranscriptEntry]) -> str:
    aliases = speaker_aliases(entries)
    if not aliases:
        return f"\n\n{NO_TRANSCRIPT}\n\n"

    lines = ["", "🎙️ TRANSCRIPT", ""]
    current: str | None = None
    for e in entries:
        text = (e.text or "").strip()
        if not text:
            continue
        name = aliases[e.speaker]
        if name != current:
            if current is not None:
                lines.append("")
            lines.append(f"[{format_offset(e.time_start_ms)}] {name}:")
            current = name
        lines.append(text)
        lines.append("")
    return "\n".join(lines)


def render_footer(*, generated_at: datetime) -> str:
    lines = [
        "",
        RULE,
        "",
        "📋 DOCUMENT INFORMATION",
        "",
        "• Generated by: Meeting Recording Service",
        "• Transcription: ChatterBox",
        f"• Document created: {_fmt_long(generated_at)}",
        "",
        "⚠️ Note: This transcript was generated automatically and may contain errors.",
        "Please review for accuracy before sharing or making decisions based on this content.",
        "",
    ]
    return "\n".join(lines)


def render_document(
    meta: TranscriptMeta,
    entries: list[TranscriptEntry],
    *,
    generated_at: datetime,
) -> str:
    return (
        render_header(meta, generated_at=generated_at)
        + render_body(entries)
        + render_footer(generated_at=generated_at)
    )


def transcript_stats(entries: list[TranscriptEntry]) -> TranscriptStats:
    if not entries:
        return TranscriptStats(total_entries=0, total_words=0, speakers=0, duration_sec=0)
    speakers = {e.speaker for e in entries}
    words = sum(len((e.text or "").split()) for e in entries)
    starts = [e.time_start_ms for e in entries if e.time_start_ms is not None]
    ends = [e.time_end_ms or e.time_start_ms for e in entries if (e.time_end_ms or e.time_start_ms) is not None]
    duration = 0
    if starts and ends:
        duration = max(0, (max(ends) - min(starts)) // 1000)
    return TranscriptStats(
        total_entries=len(entries),
        total_words=words,
        speakers=len(speakers),
        duration_sec=int(duration),
    )


def entries_from_json(raw: list[dict[str, Any]] | None) -> list[TranscriptEntry]:
    """Транскрипт из JSON-колонки meetings.transcript."""
    return [TranscriptEntry.from_dict(item) for item in (raw or []) if isinstance(item, dict)]


def entries_to_json(entries: list[TranscriptEntry]) -> list[dict[str, Any]]:
    return [e.to_dict() for e in entries]
