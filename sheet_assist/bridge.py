"""Cross-context remote calls.

``Bridge.invoke`` hides which context executes a capability. Background
capabilities ride the one-shot ``RuntimeChannel``; host capabilities ride the
broadcast ``MessageBus`` and are matched back to their caller on
``(functionName, correlationId)`` through a pending-calls map.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from sheet_assist.config import DEFAULT_BRIDGE_TIMEOUT
from sheet_assist.contracts import (
    BACKGROUND_FUNCTIONS,
    HOST_FUNCTIONS,
    build_execute_message,
    parse_response_message,
)
from sheet_assist.errors import (
    BridgeError,
    BridgeTimeout,
    HostOperationError,
    UnknownCapability,
)
from sheet_assist.messaging import HostPage, MessageBus, RuntimeChannel
from sheet_assist.models import RemoteCall, RemoteResult

logger = logging.getLogger(__name__)


@dataclass
class PendingCall:
    call: RemoteCall
    mailbox: asyncio.Future
    artifact: Any


class HostChannel:
    """Private request/response pipe layered over the party-line bus."""

    def __init__(self, bus: MessageBus, page: HostPage) -> None:
        self.bus = bus
        self.page = page
        self._pending: dict[str, PendingCall] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _on_message(self, message: Any) -> None:
        result = parse_response_message(message)
        if result is None or result.correlation_id is None:
            return
        pending = self._pending.get(result.correlation_id)
        if pending is None or pending.call.function_name != result.function_name:
            logger.debug("Ignoring response for %s/%s", result.function_name, result.correlation_id)
            return
        if not pending.mailbox.done():
            pending.mailbox.set_result(result)

    def _register(self, pending: PendingCall) -> None:
        if not self._pending:
            self.bus.add_listener(self._on_message)
        self._pending[pending.call.correlation_id] = pending

    def _release(self, correlation_id: str) -> None:
        pending = self._pending.pop(correlation_id, None)
        if pending is None:
            return
        self.page.remove(pending.artifact)
        if not self._pending:
            self.bus.remove_listener(self._on_message)

    async def call(self, call: RemoteCall, timeout: float | None) -> RemoteResult:
        loop = asyncio.get_running_loop()
        pending = PendingCall(call, loop.create_future(), self.page.create_artifact(call.correlation_id))
        self._register(pending)
        try:
            await self.page.inject(pending.artifact)
            self.bus.post_message(build_execute_message(call))
            if timeout is None:
                return await pending.mailbox
            return await asyncio.wait_for(pending.mailbox, timeout)
        except asyncio.TimeoutError:
            logger.warning("Host call %s (%s) timed out after %ss", call.function_name, call.correlation_id, timeout)
            raise BridgeTimeout(call.function_name, timeout) from None
        finally:
            self._release(call.correlation_id)


class BackgroundChannel:
    def __init__(self, runtime: RuntimeChannel) -> None:
        self.runtime = runtime

    async def call(self, call: RemoteCall, timeout: float | None) -> RemoteResult:
        message = {"action": call.function_name, "data": call.params}
        try:
            if timeout is None:
                response = await self.runtime.send_message(message)
            else:
                response = await asyncio.wait_for(self.runtime.send_message(message), timeout)
        except asyncio.TimeoutError:
            logger.warning("Background call %s timed out after %ss", call.function_name, timeout)
            raise BridgeTimeout(call.function_name, timeout) from None
        except BridgeError as exc:
            return RemoteResult.failure(call, str(exc))
        return RemoteResult.success(call, response)


class Bridge:
    def __init__(
        self,
        runtime: RuntimeChannel,
        bus: MessageBus,
        page: HostPage,
        *,
        default_timeout: float | None = DEFAULT_BRIDGE_TIMEOUT,
    ) -> None:
        self.background = BackgroundChannel(runtime)
        self.host = HostChannel(bus, page)
        self.default_timeout = default_timeout

    def _effective_timeout(self, timeout: float | None) -> float | None:
        value = self.default_timeout if timeout is None else timeout
        if value is None or value <= 0:
            return None
        return value

    async def call(self, function_name: str, params: Any = None, *, timeout: float | None = None) -> RemoteResult:
        call = RemoteCall(function_name, params)
        effective = self._effective_timeout(timeout)
        if function_name in HOST_FUNCTIONS:
            return await self.host.call(call, effective)
        if function_name in BACKGROUND_FUNCTIONS:
            return await self.background.call(call, effective)
        raise UnknownCapability(f"No context executes {function_name!r}")

    async def invoke(self, function_name: str, params: Any = None, *, timeout: float | None = None) -> Any:
        """Run ``function_name`` wherever it lives and return its value.

        A timeout of ``None`` uses the bridge default; zero or less waits
        without limit. Host failures raise ``HostOperationError``.
        """
        result = await self.call(function_name, params, timeout=timeout)
        if result.error is not None:
            if function_name in HOST_FUNCTIONS:
                raise HostOperationError(result.error, function_name)
            raise BridgeError(result.error)
        return result.value
