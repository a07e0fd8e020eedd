"""Transports between the isolated sheet-assist contexts.

Nothing crosses a context boundary as a live object: every message is
serialized to a JSON string on send and decoded again for each receiver.

``MessageBus`` is the page-wide party line shared by the UI and the host
document; every listener sees every message. ``RuntimeChannel`` is the
one-shot request/response channel between the UI and the background worker.
``HostPage`` tracks the executor artifacts injected into the host document.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

from sheet_assist.contracts import dumps
from sheet_assist.errors import BridgeError

logger = logging.getLogger(__name__)

PORT_CLOSED_MESSAGE = "The message port closed before a response was received."


class MessageBus:
    def __init__(self) -> None:
        self._listeners: list[Callable[[Any], None]] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: Callable[[Any], None]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[Any], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def post_message(self, message: Any) -> None:
        """Queue ``message`` for delivery on the next loop iteration."""
        data = dumps(message)
        asyncio.get_running_loop().call_soon(self._deliver, data)

    def _deliver(self, data: str) -> None:
        for listener in list(self._listeners):
            if listener not in self._listeners:
                continue
            try:
                listener(json.loads(data))
            except Exception:
                logger.exception("Message listener %r failed", listener)


class ResponsePort:
    """Reply side of one ``RuntimeChannel.send_message`` call."""

    def __init__(self, future: asyncio.Future) -> None:
        self._future = future
        self.replied = False

    def send_response(self, response: Any) -> None:
        if self.replied:
            logger.warning("Ignoring extra response on a one-shot message port")
            return
        self.replied = True
        if self._future.done():
            logger.debug("Response arrived after the caller stopped waiting")
            return
        self._future.set_result(json.loads(dumps(response)))

    def close(self) -> None:
        if not self.replied and not self._future.done():
            self._future.set_exception(BridgeError(PORT_CLOSED_MESSAGE))


class RuntimeChannel:
    """One request, exactly one reply.

    Listeners are called as ``listener(message, send_response)``. A listener
    that will reply after an ``await`` must return ``True`` to keep the port
    open; otherwise the port closes once every listener has run.
    """

    def __init__(self) -> None:
        self._listeners: list[Callable[[Any, Callable[[Any], None]], Any]] = []

    def add_listener(self, listener: Callable[[Any, Callable[[Any], None]], Any]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[Any, Callable[[Any], None]], Any]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def send_message(self, message: Any) -> Any:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        port = ResponsePort(future)
        loop.call_soon(self._dispatch, dumps(message), port)
        return await future

    def _dispatch(self, data: str, port: ResponsePort) -> None:
        keep_open = False
        for listener in list(self._listeners):
            try:
                if listener(json.loads(data), port.send_response) is True:
                    keep_open = True
            except Exception:
                logger.exception("Runtime listener %r failed", listener)
        if not keep_open:
            port.close()


class HostPage:
    """The host document's page, into which single-use executors are injected.

    ``artifact_factory(correlation_id)`` builds an executor bound to one call.
    Artifacts expose ``attach(bus)`` and ``detach()``.
    """

    def __init__(self, bus: MessageBus, artifact_factory: Callable[[str], Any]) -> None:
        self.bus = bus
        self.artifact_factory = artifact_factory
        self._injected: list[Any] = []

    @property
    def injected(self) -> list[Any]:
        return list(self._injected)

    def create_artifact(self, correlation_id: str) -> Any:
        return self.artifact_factory(correlation_id)

    async def inject(self, artifact: Any) -> None:
        if artifact in self._injected:
            raise BridgeError("Executor artifact is already injected")
        artifact.attach(self.bus)
        self._injected.append(artifact)
        # Script load completes on a later loop iteration.
        await asyncio.sleep(0)

    def remove(self, artifact: Any) -> None:
        if artifact in self._injected:
            self._injected.remove(artifact)
            artifact.detach()
