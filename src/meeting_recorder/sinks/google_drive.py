"""
Google Drive / Google Docs как хранилища артефактов.

Назначение:
- потоковый перенос записи по подписанной ссылке в Drive (resumable upload)
- создание Google Doc с транскриптом
- выдача прав "по ссылке" (best-effort)

Важно:
- клиенты Drive v3 / Docs v1 строятся через googleapiclient.discovery
- запись не буферизуется целиком: в памяти максимум один chunk
- к источнику (подписанный S3 URL) ходим без Google-токена
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from typing import Any

import requests
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaUpload

from meeting_recorder.common.config import get_settings
from meeting_recorder.common.errors import ErrCode, ProviderError, TransientProviderError
from meeting_recorder.common.http import (
    RETRYABLE_STATUSES,
    error_from_exception,
    raise_for_status,
)
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.sinks.base import (
    BinarySink,
    Document,
    DocumentSink,
    ProbeResult,
    UploadedFile,
)

log = get_project_logger()

DRIVE_SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/documents",
]

# Drive требует chunk кратный 256 KiB (кроме последнего)
_CHUNK_ALIGN = 256 * 1024


def _aligned_chunk_size(raw: int) -> int:
    return max(_CHUNK_ALIGN, (int(raw) // _CHUNK_ALIGN) * _CHUNK_ALIGN)


def _sink_error(e: Exception, *, what: str) -> ProviderError:
    """
    HttpError клиента Google -> наша таксономия.
    Ошибки Drive/Docs не означают, что истекла запись: только transient или sink_error.
    """
    if isinstance(e, HttpError):
        status = int(getattr(e.resp, "status", 0) or 0)
        details = {
            "status_code": status,
            "target": what,
            "reason": str(getattr(e, "reason", "") or "")[:300],
        }
        if status in RETRYABLE_STATUSES or status >= 500:
            return TransientProviderError(f"{what}: временная ошибка Google API", details)
        return ProviderError(ErrCode.SINK_ERROR, f"{what}: ошибка Google API", details)
    # сокеты/таймауты httplib2
    return TransientProviderError(f"{what}: ошибка соединения с Google API", {"err": str(e)[:300]})


# =============================================================================
# КЛИЕНТЫ GOOGLE API
# =============================================================================
class GoogleServices:
    """
    Service account + (опционально) domain-wide delegation.
    Клиенты Drive и Docs строятся один раз и кэшируются.
    """

    def __init__(
        self,
        *,
        service_account_file: str | None = None,
        delegated_user: str | None = None,
    ) -> None:
        s = get_settings()
        self.service_account_file = service_account_file or s.google_service_account_file
        self.delegated_user = delegated_user or s.google_delegated_user
        self._cache: dict[str, Any] = {}

    def _build_credentials(self) -> service_account.Credentials:
        if not self.service_account_file:
            raise ProviderError(ErrCode.SINK_ERROR, "GOOGLE_SERVICE_ACCOUNT_FILE не настроен")
        credentials = service_account.Credentials.from_service_account_file(
            self.service_account_file, scopes=DRIVE_SCOPES
        )
        if self.delegated_user:
            credentials = credentials.with_subject(self.delegated_user)
        return credentials

    def _service(self, api: str, version: str) -> Any:
        key = f"{api}:{version}"
        if key not in self._cache:
            log.info("google_service_build", extra={"payload": {"api": api, "version": version}})
            self._cache[key] = build(
                api, version, credentials=self._build_credentials(), cache_discovery=False
            )
        return self._cache[key]

    def drive(self) -> Any:
        return self._service("drive", "v3")

    def docs(self) -> Any:
        return self._service("docs", "v1")


class _DriveClient:
    def __init__(self, services: GoogleServices | None = None) -> None:
        self.services = services or GoogleServices()

    def _execute(self, request: Any, *, what: str) -> dict:
        try:
            return request.execute() or {}
        except (HttpError, OSError) as e:
            raise _sink_error(e, what=what) from e

    def share_public(self, file_id: str) -> None:
        """Права reader/anyone. Ошибка не фатальна: файл уже загружен."""
        try:
            self._execute(
                self.services.drive()
                .permissions()
                .create(
                    fileId=file_id,
                    body={"role": "reader", "type": "anyone"},
                    supportsAllDrives=True,
                ),
                what="drive_share",
            )
        except ProviderError as e:
            log.warning(
                "drive_share_failed",
                extra={"payload": {"file_id": file_id, "err": str(e.message)[:300]}},
            )


# =============================================================================
# ПОТОК ИСТОЧНИКА КАК MEDIA ДЛЯ RESUMABLE UPLOAD
# =============================================================================
class StreamingMediaUpload(MediaUpload):
    """
    Media неизвестного размера поверх итератора байтов.

    MediaIoBaseUpload требует seekable-файл известного размера, а запись
    приходит потоком. Клиент запрашивает getbytes(offset, chunksize) по
    возрастанию; короткое чтение означает конец потока. Держим только
    последний отданный chunk, чтобы повторить его после неполного 308.
    """

    def __init__(self, pieces: Iterator[bytes], *, mimetype: str, chunksize: int) -> None:
        super().__init__()
        self._pieces = pieces
        self._mimetype = mimetype
        self._chunksize = chunksize
        self._window = b""
        self._window_start = 0
        self._eof = False
        self.bytes_read = 0

    def chunksize(self) -> int:
        return self._chunksize

    def mimetype(self) -> str:
        return self._mimetype

    def size(self) -> int | None:
        return None

    def resumable(self) -> bool:
        return True

    def has_stream(self) -> bool:
        return False

    def getbytes(self, begin: int, length: int) -> bytes:
        drop = begin - self._window_start
        if drop < 0 or drop > len(self._window):
            raise ProviderError(
                ErrCode.SINK_ERROR,
                "Drive запросил участок вне буфера потока",
                {"begin": begin, "window_start": self._window_start},
            )
        buf = bytearray(self._window[drop:])
        self._window_start = begin
        while len(buf) < length and not self._eof:
            piece = next(self._pieces, None)
            if piece is None:
                self._eof = True
                break
            buf.extend(piece)
            self.bytes_read += len(piece)
        self._window = bytes(buf)
        return self._window[:length]


# =============================================================================
# BINARY SINK (запись встречи)
# =============================================================================
class GoogleDriveBinarySink(_DriveClient, BinarySink):
    def __init__(
        self,
        services: GoogleServices | None = None,
        *,
        folder_id: str | None = None,
        chunk_bytes: int | None = None,
        transfer_timeout_sec: int | None = None,
    ) -> None:
        super().__init__(services)
        s = get_settings()
        self.folder_id = folder_id or s.google_drive_recordings_folder
        self.chunk_bytes = _aligned_chunk_size(chunk_bytes or s.transfer_chunk_bytes)
        self.transfer_timeout_sec = int(transfer_timeout_sec or s.transfer_timeout_sec)
        self.connect_timeout_sec = int(s.google_timeout_sec)
        self.share_public_enabled = bool(s.google_share_public)
        self.default_mime = s.recording_mime_type

    def probe(self, source_url: str) -> ProbeResult:
        # HEAD на подписанных S3 ссылках часто даёт 403, поэтому ranged GET
        s = get_settings()
        resp = requests.get(
            source_url,
            headers={"Range": "bytes=0-0"},
            stream=True,
            timeout=s.validate_timeout_sec,
        )
        try:
            length = None
            content_range = resp.headers.get("Content-Range") or ""
            if "/" in content_range:
                total = content_range.rsplit("/", 1)[-1]
                length = int(total) if total.isdigit() else None
            elif resp.headers.get("Content-Length", "").isdigit():
                length = int(resp.headers["Content-Length"])
            return ProbeResult(
                reachable=resp.status_code < 400,
                status_code=resp.status_code,
                content_length=length,
                content_type=resp.headers.get("Content-Type"),
            )
        finally:
            resp.close()

    def upload_from_url(
        self,
        *,
        source_url: str,
        file_name: str,
        mime_type: str | None = None,
    ) -> UploadedFile:
        mime = mime_type or self.default_mime
        started = time.monotonic()
        try:
            source = requests.get(
                source_url,
                stream=True,
                timeout=(self.connect_timeout_sec, self.transfer_timeout_sec),
            )
        except requests.RequestException as e:
            raise error_from_exception(e, what="recording_source") from e

        try:
            raise_for_status(source, what="recording_source")
            media = StreamingMediaUpload(
                self._iter_source(source, started=started),
                mimetype=mime,
                chunksize=self.chunk_bytes,
            )
            created = self._upload(media, file_name=file_name, mime_type=mime)
        finally:
            source.close()

        file_id = str(created.get("id") or "")
        if not file_id:
            raise ProviderError(ErrCode.SINK_ERROR, "Drive не вернул id файла")
        size = int(created.get("size") or media.bytes_read)

        if self.share_public_enabled:
            self.share_public(file_id)

        view_url = f"https://drive.google.com/file/d/{file_id}/view"
        log.info(
            "drive_recording_uploaded",
            extra={
                "payload": {
                    "file_id": file_id,
                    "size_bytes": size,
                    "elapsed_sec": round(time.monotonic() - started, 2),
                }
            },
        )
        return UploadedFile(id=file_id, view_url=view_url, size_bytes=size)

    def _iter_source(self, source: requests.Response, *, started: float) -> Iterator[bytes]:
        try:
            for piece in source.iter_content(chunk_size=_CHUNK_ALIGN):
                if time.monotonic() - started > self.transfer_timeout_sec:
                    raise TransientProviderError(
                        "recording_source: перенос превысил таймаут (ссылка могла истечь)",
                        {"timeout_sec": self.transfer_timeout_sec},
                    )
                if piece:
                    yield piece
        except requests.RequestException as e:
            raise error_from_exception(e, what="recording_source") from e

    def _upload(self, media: StreamingMediaUpload, *, file_name: str, mime_type: str) -> dict:
        metadata: dict[str, Any] = {"name": file_name, "mimeType": mime_type}
        if self.folder_id:
            metadata["parents"] = [self.folder_id]
        try:
            request = self.services.drive().files().create(
                body=metadata,
                media_body=media,
                fields="id,size",
                supportsAllDrives=True,
            )
            response = None
            while response is None:
                _, response = request.next_chunk()
        except (HttpError, OSError) as e:
            raise _sink_error(e, what="drive_upload") from e
        return response or {}


# =============================================================================
# DOCUMENT SINK (транскрипт)
# =============================================================================
class GoogleDocsDocumentSink(_DriveClient, DocumentSink):
    def __init__(
        self,
        services: GoogleServices | None = None,
        *,
        folder_id: str | None = None,
    ) -> None:
        super().__init__(services)
        s = get_settings()
        self.folder_id = folder_id or s.google_drive_transcripts_folder
        self.share_public_enabled = bool(s.google_share_public)

    def create_document(self, *, title: str, content: str) -> Document:
        documents = self.services.docs().documents()
        created = self._execute(documents.create(body={"title": title}), what="docs_create")
        doc_id = str(created.get("documentId") or "")
        if not doc_id:
            raise ProviderError(ErrCode.SINK_ERROR, "Docs API не вернул documentId")

        if content:
            self._execute(
                documents.batchUpdate(
                    documentId=doc_id,
                    body={"requests": [{"insertText": {"location": {"index": 1}, "text": content}}]},
                ),
                what="docs_insert_text",
            )

        if self.folder_id:
            self._move_to_folder(doc_id)
        if self.share_public_enabled:
            self.share_public(doc_id)

        log.info(
            "docs_transcript_created",
            extra={"payload": {"document_id": doc_id, "chars": len(content)}},
        )
        return Document(id=doc_id, view_url=f"https://docs.google.com/document/d/{doc_id}/edit")

    def _move_to_folder(self, doc_id: str) -> None:
        files = self.services.drive().files()
        current = self._execute(
            files.get(fileId=doc_id, fields="parents", supportsAllDrives=True),
            what="drive_get_parents",
        )
        params: dict[str, Any] = {"addParents": self.folder_id}
        previous = ",".join(current.get("parents") or [])
        if previous:
            params["removeParents"] = previous
        self._execute(
            files.update(fileId=doc_id, fields="id", supportsAllDrives=True, **params),
            what="drive_move_document",
        )
