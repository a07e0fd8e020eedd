"""Background context: the only place allowed to reach the network."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import requests

from sheet_assist.api import dispatch_endpoint
from sheet_assist.completion import CompletionService
from sheet_assist.contracts import API_ENDPOINTS, API_REQUEST_ACTION, build_api_response
from sheet_assist.errors import SheetAssistError, TransportError, error_from_wire
from sheet_assist.messaging import RuntimeChannel

logger = logging.getLogger(__name__)

DEFAULT_API_TIMEOUT = 90.0


class HttpApiClient:
    def __init__(self, base_url: str, timeout: float = DEFAULT_API_TIMEOUT, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def post(self, endpoint: str, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        try:
            response = self.session.post(
                f"{self.base_url}/{endpoint}",
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"API request failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if not response.ok and "error" not in body:
            body["error"] = f"API request failed: {response.reason or response.status_code}"
        return response.status_code, body


class InProcessApiClient:
    """Runs the API handlers directly, without an HTTP hop."""

    def __init__(self, service: CompletionService) -> None:
        self.service = service

    def post(self, endpoint: str, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        return dispatch_endpoint(self.service, endpoint, payload)


class BackgroundWorker:
    def __init__(self, client: Any) -> None:
        self.client = client
        self._tasks: set[asyncio.Task] = set()

    def register(self, runtime: RuntimeChannel) -> None:
        runtime.add_listener(self.on_message)

    def on_message(self, message: Any, send_response: Callable[[Any], None]) -> bool | None:
        if not isinstance(message, dict) or message.get("action") != API_REQUEST_ACTION:
            return None
        task = asyncio.get_running_loop().create_task(self.respond(message.get("data"), send_response))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        # The reply is sent after an await, so the port must stay open.
        return True

    async def respond(self, data: Any, send_response: Callable[[Any], None]) -> None:
        try:
            body = await self.handle_api_request(data)
        except SheetAssistError as exc:
            logger.warning("API request error: %s", exc)
            send_response(build_api_response(error=str(exc), error_type=type(exc).__name__))
        except Exception as exc:
            logger.exception("API request crashed")
            send_response(build_api_response(error=str(exc) or "Internal error"))
        else:
            send_response(build_api_response(data=body))

    async def handle_api_request(self, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise TransportError("API request is missing its data")
        endpoint = data.get("endpoint")
        if endpoint not in API_ENDPOINTS:
            raise TransportError(f"Unknown API endpoint: {endpoint}")
        payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}
        status, body = await asyncio.to_thread(self.client.post, endpoint, payload)
        if not 200 <= status < 300:
            message = body.get("error") or f"API request failed: {status}"
            if body.get("errorType"):
                raise error_from_wire(body["errorType"], message)
            raise TransportError(message, status_code=status)
        return body
