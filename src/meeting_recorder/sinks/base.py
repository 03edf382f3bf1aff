"""
Базовые интерфейсы хранилищ артефактов.

Назначение:
- BinarySink: потоковая загрузка записи (без буферизации всего файла)
- DocumentSink: создание текстового документа с транскриптом
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass
class UploadedFile:
    id: str
    view_url: str
    size_bytes: int


@dataclass
class Document:
    id: str
    view_url: str


@dataclass
class ProbeResult:
    """Результат advisory-проверки источника (ни на что не влияет)."""

    reachable: bool
    status_code: int | None = None
    content_length: int | None = None
    content_type: str | None = None


class BinarySink(Protocol):
    def upload_from_url(
        self,
        *,
        source_url: str,
        file_name: str,
        mime_type: str | None = None,
    ) -> UploadedFile:
        """Скачать источник потоком и загрузить в хранилище."""
        ...

    def probe(self, source_url: str) -> ProbeResult:
        ...


class DocumentSink(Protocol):
    def create_document(self, *, title: str, content: str) -> Document:
        ...
