from __future__ import annotations

import os

# Настройки читаются один раз при импорте config: окружение задаём до него.
os.environ["APP_ENV"] = "test"
os.environ["POSTGRES_DSN"] = "sqlite+pysqlite:///:memory:"
os.environ["AUTH_MODE"] = "api_key"
os.environ["API_KEYS"] = "test-key"
os.environ["WEBHOOK_SECRET"] = ""
os.environ["CHATTERBOX_MODE"] = "mock"
os.environ["SLACK_BOT_TOKEN"] = ""
os.environ["LOG_FORMAT"] = "text"

from dataclasses import dataclass, field  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402

from meeting_recorder.common.errors import TransientProviderError  # noqa: E402
from meeting_recorder.connectors.chatterbox.mock import MockChatterBoxConnector  # noqa: E402
from meeting_recorder.domain.enums import MeetingStatus  # noqa: E402
from meeting_recorder.services.background import BackgroundRunner  # noqa: E402
from meeting_recorder.services.pipeline_service import RecordingPipeline  # noqa: E402
from meeting_recorder.services.step_executor import StepExecutor  # noqa: E402
from meeting_recorder.sinks.base import Document, ProbeResult, UploadedFile  # noqa: E402
from meeting_recorder.storage.db import create_schema, db_session, drop_schema  # noqa: E402
from meeting_recorder.storage.repositories import MeetingRepository  # noqa: E402


@pytest.fixture(autouse=True)
def _schema():
    create_schema()
    yield
    drop_schema()


# =============================================================================
# FAKES
# =============================================================================
@dataclass
class FakeBinarySink:
    """upload_from_url по очереди отдаёт ошибки из failures, потом успех."""

    failures: list[Exception] = field(default_factory=list)
    uploads: list[tuple[str, str]] = field(default_factory=list)
    calls: int = 0
    reachable: bool = True

    def upload_from_url(self, *, source_url: str, file_name: str, mime_type: str | None = None):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.uploads.append((source_url, file_name))
        return UploadedFile(
            id=f"file-{len(self.uploads)}",
            view_url=f"https://drive.example/file-{len(self.uploads)}",
            size_bytes=1024,
        )

    def probe(self, source_url: str) -> ProbeResult:
        return ProbeResult(reachable=self.reachable, status_code=206 if self.reachable else 403)


@dataclass
class FakeDocumentSink:
    documents: list[tuple[str, str]] = field(default_factory=list)

    def create_document(self, *, title: str, content: str) -> Document:
        self.documents.append((title, content))
        n = len(self.documents)
        return Document(id=f"doc-{n}", view_url=f"https://docs.example/doc-{n}")


@dataclass
class FakeNotifier:
    channel: str = "#recordings"
    completions: list[str] = field(default_factory=list)
    stats: list[Any] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    alerts: list[dict[str, Any]] = field(default_factory=list)
    fail_completion: bool = False
    fail_alert: bool = False

    def notify_completion(self, *, meeting, recording, document, speakers, stats=None):
        if self.fail_completion:
            raise TransientProviderError("slack down")
        self.completions.append(meeting.id)
        self.stats.append(stats)
        return "1700000000.000100"

    def notify_failure(self, *, meeting, error, step=None):
        self.failures.append({"meeting_id": meeting.id, "error": error, "step": step})

    def send_critical_alert(self, *, meeting_id, step, error, context=None, severity="critical"):
        if self.fail_alert:
            raise RuntimeError("alert channel unavailable")
        self.alerts.append({"meeting_id": meeting_id, "step": step, "error": error})


# =============================================================================
# FIXTURES
# =============================================================================
@pytest.fixture()
def provider() -> MockChatterBoxConnector:
    return MockChatterBoxConnector()


@pytest.fixture()
def binary_sink() -> FakeBinarySink:
    return FakeBinarySink()


@pytest.fixture()
def document_sink() -> FakeDocumentSink:
    return FakeDocumentSink()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def executor(sleeps) -> StepExecutor:
    return StepExecutor(max_attempts=3, backoff_base_sec=2.0, sleep=sleeps.append)


@pytest.fixture()
def pipeline(provider, binary_sink, document_sink, notifier, executor) -> RecordingPipeline:
    return RecordingPipeline(
        provider=provider,
        binary_sink=binary_sink,
        document_sink=document_sink,
        notifier=notifier,
        executor=executor,
    )


@pytest.fixture()
def runner():
    r = BackgroundRunner(max_workers=2, name="test")
    yield r
    r.shutdown(5)


@pytest.fixture()
def make_meeting():
    """Создать встречу в нужном статусе; возвращает id."""
    counter = {"n": 0}

    def _make(status: MeetingStatus = MeetingStatus.recording, **fields: Any) -> str:
        counter["n"] += 1
        meeting_id = f"mtg-test-{counter['n']}"
        fields.setdefault("calendar_event_id", f"evt-{counter['n']}")
        fields.setdefault("conference_id", "abc-defg-hij")
        fields.setdefault("title", "Weekly sync")
        with db_session() as s:
            MeetingRepository(s).create(meeting_id=meeting_id, status=status, **fields)
        return meeting_id

    return _make


@pytest.fixture()
def add_session(provider):
    """Сессия провайдера с готовой ссылкой на запись."""

    def _add(session_id: str, *, recording_url: str | None = "https://cdn.example/rec.mkv"):
        from meeting_recorder.connectors.base import SessionData, TranscriptEntry

        provider.sessions[session_id] = SessionData(
            session_id=session_id,
            recording_url=recording_url,
            transcript=[
                TranscriptEntry(speaker="u-1", text="Привет всем", time_start_ms=0),
                TranscriptEntry(speaker="u-2", text="Начнём", time_start_ms=5000),
            ],
            conference_id="abc-defg-hij",
        )
        return provider.sessions[session_id]

    return _add
