"""
Уведомления в Slack (chat.postMessage).

Назначение:
- сообщение о готовых артефактах (запись + транскрипт)
- сообщение о неудаче с кнопкой ручного retry
- критический алерт (никогда не бросает исключений)
"""

from __future__ import annotations

from typing import Any, Protocol

import requests

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.errors import ErrCode, ProviderError, TransientProviderError
from meeting_recorder.common.http import error_from_exception
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.common.time import as_utc, utc_now
from meeting_recorder.processing.transcript import TranscriptStats
from meeting_recorder.sinks.base import Document, UploadedFile

log = get_project_logger()


class Notifier(Protocol):
    def notify_completion(
        self,
        *,
        meeting: Any,
        recording: UploadedFile,
        document: Document,
        speakers: list[str],
        stats: TranscriptStats | None = None,
    ) -> str | None:
        """Вернуть id сообщения (Slack ts) или None, если канал не настроен."""
        ...

    def notify_failure(self, *, meeting: Any, error: str, step: str | None = None) -> None:
        ...

    def send_critical_alert(
        self,
        *,
        meeting_id: str,
        step: str | None,
        error: str,
        context: dict[str, Any] | None = None,
        severity: str = "critical",
    ) -> None:
        ...


def _fmt_dt(value) -> str:
    dt = as_utc(value)
    return dt.strftime("%Y-%m-%d %H:%M UTC") if dt else "-"


def _stats_line(stats: TranscriptStats) -> str:
    minutes, seconds = divmod(int(stats.duration_sec), 60)
    return (
        f"{stats.total_entries} replies · {stats.total_words} words · "
        f"{stats.speakers} speakers · {minutes}m {seconds:02d}s"
    )


class SlackNotifier(Notifier):
    def __init__(
        self,
        *,
        token: str | None = None,
        channel: str | None = None,
        api_base: str | None = None,
        timeout_sec: int | None = None,
    ) -> None:
        s = get_settings()
        self.token = (token or s.slack_bot_token or "").strip()
        self.channel = (channel or s.slack_channel or "").strip()
        self.api_base = (api_base or s.slack_api_base).rstrip("/")
        self.timeout_sec = int(timeout_sec or s.slack_timeout_sec)
        self.base_url = s.base_url.rstrip("/")

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.channel)

    def _post_message(self, *, text: str, blocks: list[dict]) -> str:
        try:
            resp = requests.post(
                f"{self.api_base}/chat.postMessage",
                json={"channel": self.channel, "text": text, "blocks": blocks},
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Content-Type": "application/json; charset=utf-8",
                },
                timeout=self.timeout_sec,
            )
        except requests.RequestException as e:
            raise error_from_exception(e, what="slack_post", code=ErrCode.NOTIFIER_ERROR) from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientProviderError(
                "slack_post: временная ошибка", {"status_code": resp.status_code}
            )
        data = resp.json() if resp.content else {}
        if resp.status_code >= 400 or not data.get("ok"):
            err = str(data.get("error") or f"HTTP {resp.status_code}")
            if err == "ratelimited":
                raise TransientProviderError("slack_post: rate limited", {"error": err})
            raise ProviderError(ErrCode.NOTIFIER_ERROR, f"slack_post: {err}", {"error": err})
        return str(data.get("ts") or "")

    def notify_completion(
        self,
        *,
        meeting: Any,
        recording: UploadedFile,
        document: Document,
        speakers: list[str],
        stats: TranscriptStats | None = None,
    ) -> str | None:
        if not self.enabled:
            log.info("slack_not_configured", extra={"payload": {"meeting_id": meeting.id}})
            return None

        title = meeting.title or "Meeting"
        speakers_text = ", ".join(speakers) if speakers else "No speakers detected"
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"✅ {title} Recording Completed", "emoji": True},
            },
            {
                "type": "section",
                "fields": [
                    {
                        "type": "mrkdwn",
                        "text": f"*Date:*\n{_fmt_dt(meeting.meeting_started_at or meeting.created_at)}",
                    },
                    {"type": "mrkdwn", "text": f"*Speakers:*\n{speakers_text}"},
                ],
            },
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "🎥 View Recording", "emoji": True},
                        "url": recording.view_url,
                        "style": "primary",
                    },
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "📝 View Transcript", "emoji": True},
                        "url": document.view_url,
                    },
                ],
            },
        ]
        if stats is not None and stats.total_entries:
            blocks.append(
                {
                    "type": "context",
                    "elements": [{"type": "mrkdwn", "text": _stats_line(stats)}],
                }
            )
        ts = self._post_message(text=f"✅ Meeting recording complete: {title}", blocks=blocks)
        log.info("slack_completion_sent", extra={"payload": {"meeting_id": meeting.id, "ts": ts}})
        return ts

    def notify_failure(self, *, meeting: Any, error: str, step: str | None = None) -> None:
        if not self.enabled:
            return
        title = getattr(meeting, "title", None) or "Meeting"
        step_line = f"\n*Failed Step:* {step}" if step else ""
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "❌ Meeting Recording Failed", "emoji": True},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Meeting:*\n{title}"},
                    {
                        "type": "mrkdwn",
                        "text": f"*Conference ID:*\n{getattr(meeting, 'conference_id', None) or '-'}",
                    },
                ],
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*Error:* {error[:500]}{step_line}\n*Time:* {_fmt_dt(utc_now())}",
                },
            },
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "🔄 Retry Processing", "emoji": True},
                        "url": f"{self.base_url}/api/meetings/{meeting.id}/retry",
                        "style": "danger",
                    }
                ],
            },
        ]
        try:
            self._post_message(text=f"❌ Meeting recording failed: {title}", blocks=blocks)
        except ProviderError as e:
            log.error(
                "slack_failure_notification_failed",
                extra={"payload": {"meeting_id": meeting.id, "err": str(e.message)[:300]}},
            )

    def send_critical_alert(
        self,
        *,
        meeting_id: str,
        step: str | None,
        error: str,
        context: dict[str, Any] | None = None,
        severity: str = "critical",
    ) -> None:
        if not self.enabled:
            log.warning(
                "critical_alert_not_sent",
                extra={"payload": {"meeting_id": meeting_id, "reason": "slack_not_configured"}},
            )
            return
        ctx = ", ".join(f"{k}={v}" for k, v in (context or {}).items()) or "-"
        text = (
            f"🚨 *{severity.capitalize()}: meeting processing failed*\n"
            f"*Meeting:* {meeting_id}\n*Step:* {step or 'unknown'}\n"
            f"*Error:* {error[:500]}\n*Context:* {ctx[:500]}"
        )
        try:
            self._post_message(
                text=f"🚨 {severity.capitalize()}: meeting {meeting_id} failed",
                blocks=[{"type": "section", "text": {"type": "mrkdwn", "text": text}}],
            )
        except Exception as e:
            log.error(
                "critical_alert_failed",
                extra={"payload": {"meeting_id": meeting_id, "err": str(e)[:300]}},
            )
