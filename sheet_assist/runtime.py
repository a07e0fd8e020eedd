"""Wires the three contexts together around one workbook.

Nothing here touches the event loop, but the returned objects must be driven
from a single loop (the CLI and the web page use ``asyncio.run``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sheet_assist.background import BackgroundWorker, HttpApiClient, InProcessApiClient
from sheet_assist.bridge import Bridge
from sheet_assist.completion import CompletionService
from sheet_assist.config import Settings
from sheet_assist.host import ExecutorArtifact, WorkbookHost
from sheet_assist.messaging import HostPage, MessageBus, RuntimeChannel
from sheet_assist.orchestrator import ActionOrchestrator, RemoteCompletionClient, completion_timeout

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    host: WorkbookHost
    bus: MessageBus
    channel: RuntimeChannel
    page: HostPage
    bridge: Bridge
    worker: BackgroundWorker
    orchestrator: ActionOrchestrator


def default_api_client(settings: Settings, service: CompletionService | None = None) -> Any:
    if settings.api_url:
        logger.debug("Background requests go to %s", settings.api_url)
        return HttpApiClient(settings.api_url)
    return InProcessApiClient(service or CompletionService(settings))


def build_runtime(
    host: WorkbookHost,
    *,
    settings: Settings | None = None,
    renderer: Any = None,
    api_client: Any = None,
    service: CompletionService | None = None,
) -> Runtime:
    settings = settings or Settings.from_env()
    bus = MessageBus()
    channel = RuntimeChannel()
    page = HostPage(bus, lambda correlation_id: ExecutorArtifact(host, correlation_id))
    bridge = Bridge(channel, bus, page, default_timeout=settings.bridge_timeout)
    worker = BackgroundWorker(api_client or default_api_client(settings, service))
    worker.register(channel)
    completion = RemoteCompletionClient(
        bridge, timeout=completion_timeout(settings.bridge_timeout, settings.provider_timeout)
    )
    orchestrator = ActionOrchestrator(bridge, renderer, completion)
    return Runtime(host, bus, channel, page, bridge, worker, orchestrator)
