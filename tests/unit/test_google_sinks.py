from __future__ import annotations

from types import SimpleNamespace

import pytest
from googleapiclient.errors import HttpError

from meeting_recorder.common.errors import ProviderError, SourceExpiredError, TransientProviderError
from meeting_recorder.sinks import google_drive
from meeting_recorder.sinks.google_drive import (
    GoogleDocsDocumentSink,
    GoogleDriveBinarySink,
    GoogleServices,
    StreamingMediaUpload,
)

KIB = 1024


def _http_error(status: int) -> HttpError:
    return HttpError(
        SimpleNamespace(status=status, reason="err"),
        b'{"error": {"message": "backend"}}',
    )


class _Resp:
    def __init__(self, status_code=200, headers=None, pieces=None) -> None:
        self.status_code = status_code
        self.headers = headers or {}
        self.text = ""
        self._pieces = pieces or []
        self.closed = False

    def iter_content(self, chunk_size=None):
        yield from self._pieces

    def close(self):
        self.closed = True


class _Request:
    """Запрос discovery-клиента: execute() или постраничный next_chunk()."""

    def __init__(self, api: _Api, key: str, kwargs: dict) -> None:
        self.api = api
        self.key = key
        self.kwargs = kwargs
        self.progress = 0

    def _result(self):
        result = self.api.responses[self.key].pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def execute(self):
        return self._result()

    def next_chunk(self):
        # как googleapiclient: короткое чтение = последний chunk
        media = self.kwargs["media_body"]
        data = media.getbytes(self.progress, media.chunksize())
        self.api.chunks.append((self.progress, len(data)))
        if len(data) < media.chunksize():
            return None, self._result()
        self.progress += len(data)
        return SimpleNamespace(resumable_progress=self.progress), None


class _Resource:
    def __init__(self, api: _Api, name: str) -> None:
        self.api = api
        self.name = name

    def __getattr__(self, method):
        def _call(**kwargs):
            key = f"{self.name}.{method}"
            self.api.calls.append((key, kwargs))
            return _Request(self.api, key, kwargs)

        return _call


class _Api:
    def __init__(self, responses: dict[str, list]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, dict]] = []
        self.chunks: list[tuple[int, int]] = []

    def files(self):
        return _Resource(self, "files")

    def permissions(self):
        return _Resource(self, "permissions")

    def documents(self):
        return _Resource(self, "documents")


def _services(drive: _Api | None = None, docs: _Api | None = None):
    return SimpleNamespace(drive=lambda: drive, docs=lambda: docs)


def test_upload_streams_in_aligned_chunks(monkeypatch):
    source = _Resp(200, pieces=[b"a" * 200 * KIB] * 3)
    monkeypatch.setattr(google_drive.requests, "get", lambda *a, **kw: source)
    drive = _Api(
        {
            "files.create": [{"id": "file-1", "size": str(600 * KIB)}],
            "permissions.create": [{"id": "perm-1"}],
        }
    )
    sink = GoogleDriveBinarySink(_services(drive), folder_id="folder-rec", chunk_bytes=256 * KIB)

    uploaded = sink.upload_from_url(source_url="https://s3.example/rec.mkv", file_name="rec.mkv")

    assert uploaded.id == "file-1"
    assert uploaded.size_bytes == 600 * KIB
    assert uploaded.view_url == "https://drive.google.com/file/d/file-1/view"
    assert drive.chunks == [(0, 256 * KIB), (256 * KIB, 256 * KIB), (512 * KIB, 88 * KIB)]
    (create_key, create), (share_key, share) = drive.calls
    assert create_key == "files.create"
    assert create["body"] == {"name": "rec.mkv", "mimeType": "video/x-matroska", "parents": ["folder-rec"]}
    assert create["media_body"].resumable() is True
    assert share_key == "permissions.create"
    assert share["body"] == {"role": "reader", "type": "anyone"}
    assert source.closed is True


def test_chunk_size_is_aligned_to_256_kib():
    sink = GoogleDriveBinarySink(_services(), chunk_bytes=300 * KIB)
    assert sink.chunk_bytes == 256 * KIB


def test_streaming_media_replays_partially_acknowledged_chunk():
    media = StreamingMediaUpload(iter([b"abcd", b"efgh", b"ij"]), mimetype="video/webm", chunksize=4)

    assert media.size() is None
    assert media.getbytes(0, 4) == b"abcd"
    # сервер подтвердил только 2 байта: клиент перезапрашивает с offset 2
    assert media.getbytes(2, 4) == b"cdef"
    assert media.getbytes(6, 4) == b"ghij"
    assert media.getbytes(10, 4) == b""
    assert media.bytes_read == 10


def test_streaming_media_rejects_offset_outside_buffer():
    media = StreamingMediaUpload(iter([b"abcd", b"efgh"]), mimetype="video/webm", chunksize=4)
    media.getbytes(0, 4)
    media.getbytes(4, 4)
    with pytest.raises(ProviderError):
        media.getbytes(0, 4)


def test_expired_source_is_not_uploaded(monkeypatch):
    monkeypatch.setattr(google_drive.requests, "get", lambda *a, **kw: _Resp(403))
    drive = _Api({})
    sink = GoogleDriveBinarySink(_services(drive))
    with pytest.raises(SourceExpiredError):
        sink.upload_from_url(source_url="https://s3.example/rec.mkv", file_name="rec.mkv")
    assert drive.calls == []


def test_drive_5xx_is_transient(monkeypatch):
    monkeypatch.setattr(google_drive.requests, "get", lambda *a, **kw: _Resp(200, pieces=[b"x"]))
    drive = _Api({"files.create": [_http_error(503)]})
    sink = GoogleDriveBinarySink(_services(drive))
    with pytest.raises(TransientProviderError):
        sink.upload_from_url(source_url="https://s3.example/rec.mkv", file_name="rec.mkv")


def test_drive_4xx_is_sink_error_not_expired(monkeypatch):
    monkeypatch.setattr(google_drive.requests, "get", lambda *a, **kw: _Resp(200, pieces=[b"x"]))
    drive = _Api({"files.create": [_http_error(404)]})
    sink = GoogleDriveBinarySink(_services(drive))
    with pytest.raises(ProviderError) as exc:
        sink.upload_from_url(source_url="https://s3.example/rec.mkv", file_name="rec.mkv")
    assert not isinstance(exc.value, SourceExpiredError)
    assert exc.value.code == "sink_error"
    assert exc.value.details["status_code"] == 404


def test_share_failure_does_not_fail_upload(monkeypatch):
    monkeypatch.setattr(google_drive.requests, "get", lambda *a, **kw: _Resp(200, pieces=[b"x"]))
    drive = _Api(
        {
            "files.create": [{"id": "file-2"}],
            "permissions.create": [_http_error(400)],
        }
    )
    uploaded = GoogleDriveBinarySink(_services(drive)).upload_from_url(
        source_url="https://s3.example/rec.mkv", file_name="rec.mkv"
    )
    assert uploaded.id == "file-2"
    assert uploaded.size_bytes == 1


def test_source_size_is_read_from_content_range(monkeypatch):
    resp = _Resp(206, headers={"Content-Range": "bytes 0-0/5000", "Content-Type": "video/webm"})
    monkeypatch.setattr(google_drive.requests, "get", lambda *a, **kw: resp)
    result = GoogleDriveBinarySink(_services()).probe("https://s3.example/rec.mkv")
    assert result.reachable is True
    assert result.content_length == 5000
    assert resp.closed is True


def test_create_document_moves_and_shares():
    docs = _Api({"documents.create": [{"documentId": "doc-1"}], "documents.batchUpdate": [{}]})
    drive = _Api(
        {
            "files.get": [{"parents": ["root"]}],
            "files.update": [{"id": "doc-1"}],
            "permissions.create": [{"id": "perm"}],
        }
    )
    sink = GoogleDocsDocumentSink(_services(drive, docs), folder_id="folder-docs")

    doc = sink.create_document(title="Meeting Transcript - Sync", content="hello")

    assert doc.id == "doc-1"
    assert doc.view_url == "https://docs.google.com/document/d/doc-1/edit"
    (_, create), (_, insert) = docs.calls
    assert create["body"] == {"title": "Meeting Transcript - Sync"}
    assert insert["documentId"] == "doc-1"
    assert insert["body"]["requests"][0]["insertText"]["text"] == "hello"
    keys = [k for k, _ in drive.calls]
    assert keys == ["files.get", "files.update", "permissions.create"]
    move = drive.calls[1][1]
    assert move["addParents"] == "folder-docs"
    assert move["removeParents"] == "root"


def test_create_document_without_id_fails():
    sink = GoogleDocsDocumentSink(_services(docs=_Api({"documents.create": [{}]})))
    with pytest.raises(ProviderError):
        sink.create_document(title="t", content="x")


def test_missing_service_account_is_reported(monkeypatch):
    monkeypatch.setattr(google_drive, "build", lambda *a, **kw: pytest.fail("build called"))
    sink = GoogleDocsDocumentSink(GoogleServices())
    with pytest.raises(ProviderError):
        sink.create_document(title="t", content="x")


def test_services_are_built_once_with_delegation(monkeypatch):
    built: list[tuple[str, str, str]] = []
    creds = SimpleNamespace(subject=None)
    creds.with_subject = lambda user: SimpleNamespace(subject=user)
    monkeypatch.setattr(
        google_drive.service_account.Credentials,
        "from_service_account_file",
        lambda path, scopes: creds,
    )

    def _build(api, version, credentials, cache_discovery):
        built.append((api, version, credentials.subject))
        return object()

    monkeypatch.setattr(google_drive, "build", _build)
    services = GoogleServices(service_account_file="/fake/sa.json", delegated_user="bot@example.com")

    assert services.drive() is services.drive()
    services.docs()

    assert built == [("drive", "v3", "bot@example.com"), ("docs", "v1", "bot@example.com")]
