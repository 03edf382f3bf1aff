from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from apps.api_gateway.main import create_app
from meeting_recorder.common.config import get_settings
from meeting_recorder.domain.enums import MeetingStatus
from meeting_recorder.services.runtime import build_runtime

AUTH = {"X-API-Key": "test-key"}


@pytest.fixture()
def runtime(provider, binary_sink, document_sink, notifier, executor, runner):
    return build_runtime(
        provider=provider,
        binary_sink=binary_sink,
        document_sink=document_sink,
        notifier=notifier,
        executor=executor,
        runner=runner,
    )


@pytest.fixture()
def client(runtime) -> TestClient:
    return TestClient(create_app(runtime=runtime))


def test_health_and_metrics(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["runtime_ready"] is True
    assert r.json()["provider_configured"] is True
    assert client.get("/metrics").status_code == 200


def test_meeting_started_webhook(client):
    body = {
        "id": "evt-1",
        "summary": "Sync",
        "conferenceData": {"conferenceId": "abc-defg-hij"},
        "start": {"dateTime": "2026-03-02T10:00:00Z"},
    }
    r = client.post("/webhook/meeting-started", json=body)
    assert r.status_code == 201
    data = r.json()
    assert data["status"] == "bot_joined"
    assert data["session_id"] == "mock-session-1"

    dup = client.post("/webhook/meeting-started", json=body)
    assert dup.status_code == 409
    assert dup.json()["code"] == "conflict"


def test_meeting_started_requires_conference(client):
    r = client.post("/webhook/meeting-started", json={"id": "evt-1"})
    assert r.status_code == 422


def test_unknown_provider_event_is_acked(client):
    r = client.post("/webhook/chatterbox", json={"type": "bot.kicked", "payload": {}})
    assert r.status_code == 200
    assert r.json()["action"] == "ignored"


def test_finished_webhook_then_status(client, make_meeting, add_session, runner):
    add_session("sess-1")
    mid = make_meeting(MeetingStatus.recording, provider_session_id="sess-1")

    r = client.post(
        "/webhook/chatterbox",
        json={"type": "finished", "payload": {"sessionId": "sess-1", "timestamp": time.time()}},
    )
    assert r.status_code == 200
    assert r.json()["action"] == "dispatched"
    assert r.json()["link_window"]["expired"] is False
    assert runner.wait_idle(10)

    st = client.get(f"/api/meetings/{mid}/status", headers=AUTH)
    assert st.status_code == 200
    data = st.json()
    assert data["meeting"]["status"] == "completed"
    assert data["meeting"]["transcript_doc_url"] == "https://docs.example/doc-1"
    assert len(data["attempts"]) == 5
    assert data["processing_time_sec"] is not None


def test_finished_without_timestamp_is_bad_request(client, make_meeting):
    make_meeting(MeetingStatus.recording, provider_session_id="sess-1")
    r = client.post(
        "/webhook/chatterbox", json={"type": "finished", "payload": {"sessionId": "sess-1"}}
    )
    assert r.status_code == 400
    assert r.json()["code"] == "validation"


@pytest.mark.parametrize("ts", ["1e400", 1e20, "nan"])
def test_finished_with_out_of_range_timestamp_is_bad_request(client, make_meeting, ts):
    make_meeting(MeetingStatus.recording, provider_session_id="sess-1")
    r = client.post(
        "/webhook/chatterbox",
        json={"type": "finished", "payload": {"sessionId": "sess-1", "timestamp": ts}},
    )
    assert r.status_code == 400
    assert r.json()["code"] == "validation"


def test_finished_for_unknown_session_is_404(client):
    r = client.post(
        "/webhook/chatterbox",
        json={"type": "finished", "payload": {"sessionId": "ghost", "timestamp": time.time()}},
    )
    assert r.status_code == 404


def test_webhook_secret_enforced(client):
    s = get_settings()
    snapshot = s.webhook_secret
    try:
        s.webhook_secret = "hook-secret"
        denied = client.post("/webhook/chatterbox", json={"type": "x", "payload": {}})
        allowed = client.post(
            "/webhook/chatterbox",
            json={"type": "x", "payload": {}},
            headers={"X-Webhook-Secret": "hook-secret"},
        )
    finally:
        s.webhook_secret = snapshot
    assert denied.status_code == 401
    assert allowed.status_code == 200


def test_management_api_requires_key(client, make_meeting):
    mid = make_meeting(MeetingStatus.recording)
    assert client.get(f"/api/meetings/{mid}/status").status_code == 401
    assert client.get(f"/api/meetings/{mid}/status", headers={"X-API-Key": "bad"}).status_code == 401


def test_status_unknown_meeting_is_404(client):
    r = client.get("/api/meetings/nope/status", headers=AUTH)
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_retry_rules(client, make_meeting, add_session, runner):
    done = make_meeting(MeetingStatus.completed, provider_session_id="sess-done")
    assert client.post(f"/api/meetings/{done}/retry", headers=AUTH).status_code == 409

    no_session = make_meeting(MeetingStatus.failed)
    assert client.post(f"/api/meetings/{no_session}/retry", headers=AUTH).status_code == 400

    add_session("sess-1")
    failed = make_meeting(MeetingStatus.failed, provider_session_id="sess-1")
    r = client.post(f"/api/meetings/{failed}/retry", headers=AUTH)
    assert r.status_code == 202
    assert r.json()["accepted"] is True
    assert runner.wait_idle(10)

    st = client.get(f"/api/meetings/{failed}/status", headers=AUTH).json()
    assert st["meeting"]["status"] == "completed"
    assert st["meeting"]["recovery_count"] == 1


def test_force_process(client, make_meeting, runner, binary_sink):
    done = make_meeting(MeetingStatus.completed)
    assert client.post(f"/api/meetings/{done}/process", headers=AUTH).status_code == 409

    mid = make_meeting(MeetingStatus.bot_joined)
    r = client.post(
        f"/api/meetings/{mid}/process",
        headers=AUTH,
        json={"recording_url": "https://cdn.example/manual.mkv"},
    )
    assert r.status_code == 202
    assert runner.wait_idle(10)
    assert binary_sink.uploads[0][0] == "https://cdn.example/manual.mkv"
