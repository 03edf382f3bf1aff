"""
Сборка компонентов сервиса.

Назначение:
- все компоненты создаются один раз при старте процесса и передаются ссылками
- никаких изменяемых глобальных синглтонов сервисов
"""

from __future__ import annotations

from dataclasses import dataclass

from meeting_recorder.common.config import Settings, get_settings
from meeting_recorder.common.logging import get_project_logger
from meeting_recorder.connectors.base import ProviderGateway
from meeting_recorder.connectors.chatterbox.adapter import ChatterBoxConnector
from meeting_recorder.connectors.chatterbox.mock import MockChatterBoxConnector
from meeting_recorder.jobs.reconciliation_job import ReconciliationPoller
from meeting_recorder.notifications.slack import Notifier, SlackNotifier
from meeting_recorder.services.background import BackgroundRunner
from meeting_recorder.services.pipeline_service import RecordingPipeline
from meeting_recorder.services.step_executor import StepExecutor
from meeting_recorder.services.webhook_service import WebhookIngestService
from meeting_recorder.sinks.base import BinarySink, DocumentSink
from meeting_recorder.sinks.google_drive import (
    GoogleDocsDocumentSink,
    GoogleDriveBinarySink,
    GoogleServices,
)

log = get_project_logger()


@dataclass
class Runtime:
    provider: ProviderGateway
    binary_sink: BinarySink
    document_sink: DocumentSink
    notifier: Notifier
    pipeline: RecordingPipeline
    runner: BackgroundRunner
    ingest: WebhookIngestService
    poller: ReconciliationPoller

    def shutdown(self, grace_sec: float | None = None) -> bool:
        """
        Дренаж фоновых прогонов. Не уложились в grace: недоделанные встречи
        переводим в failed, иначе они навсегда останутся в processing.
        """
        drained = self.runner.shutdown(grace_sec)
        if not drained:
            self.pipeline.interrupt_inflight()
        return drained


def _build_provider(settings: Settings) -> ProviderGateway:
    mode = (settings.chatterbox_mode or "real").strip().lower()
    if mode == "mock":
        return MockChatterBoxConnector()
    return ChatterBoxConnector()


def build_runtime(
    *,
    settings: Settings | None = None,
    provider: ProviderGateway | None = None,
    binary_sink: BinarySink | None = None,
    document_sink: DocumentSink | None = None,
    notifier: Notifier | None = None,
    executor: StepExecutor | None = None,
    runner: BackgroundRunner | None = None,
) -> Runtime:
    s = settings or get_settings()
    provider = provider or _build_provider(s)
    if binary_sink is None or document_sink is None:
        google = GoogleServices()
        binary_sink = binary_sink or GoogleDriveBinarySink(google)
        document_sink = document_sink or GoogleDocsDocumentSink(google)
    notifier = notifier or SlackNotifier()
    runner = runner or BackgroundRunner(max_workers=s.pipeline_workers)

    pipeline = RecordingPipeline(
        provider=provider,
        binary_sink=binary_sink,
        document_sink=document_sink,
        notifier=notifier,
        executor=executor or StepExecutor(),
    )
    rt = Runtime(
        provider=provider,
        binary_sink=binary_sink,
        document_sink=document_sink,
        notifier=notifier,
        pipeline=pipeline,
        runner=runner,
        ingest=WebhookIngestService(pipeline=pipeline, runner=runner, provider=provider),
        poller=ReconciliationPoller(pipeline=pipeline, provider=provider, runner=runner),
    )
    log.info(
        "runtime_built",
        extra={
            "payload": {
                "provider": type(provider).__name__,
                "workers": s.pipeline_workers,
            }
        },
    )
    return rt
