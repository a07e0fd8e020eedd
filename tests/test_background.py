from __future__ import annotations

import unittest
from unittest import mock

import requests

from sheet_assist.background import BackgroundWorker, HttpApiClient, InProcessApiClient
from sheet_assist.completion import CompletionService
from sheet_assist.config import Settings
from sheet_assist.errors import BridgeError, ParseError, TransportError
from sheet_assist.messaging import RuntimeChannel
from sheet_assist.models import FixRecord


def http_response(status_code: int, payload=None, reason: str = "") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.reason = reason
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


class StaticClient:
    def __init__(self, status: int, body: dict) -> None:
        self.status = status
        self.body = body
        self.calls: list[tuple[str, dict]] = []

    def post(self, endpoint: str, payload: dict) -> tuple[int, dict]:
        self.calls.append((endpoint, payload))
        return self.status, self.body


class HttpApiClientTests(unittest.TestCase):
    def test_posts_json_to_endpoint(self):
        session = mock.Mock()
        session.post.return_value = http_response(200, {"fixes": []})
        client = HttpApiClient("http://api.test/", session=session)
        self.assertEqual(client.post("fix-table", {"values": [[1]]}), (200, {"fixes": []}))
        args, kwargs = session.post.call_args
        self.assertEqual(args[0], "http://api.test/fix-table")
        self.assertEqual(kwargs["json"], {"values": [[1]]})

    def test_error_without_body_gets_reason(self):
        session = mock.Mock()
        session.post.return_value = http_response(502, ValueError("no json"), reason="Bad Gateway")
        status, body = HttpApiClient("http://api.test", session=session).post("fix-table", {})
        self.assertEqual(status, 502)
        self.assertEqual(body, {"error": "API request failed: Bad Gateway"})

    def test_network_failure_is_transport_error(self):
        session = mock.Mock()
        session.post.side_effect = requests.Timeout("slow")
        with self.assertRaises(TransportError):
            HttpApiClient("http://api.test", session=session).post("fix-table", {})


class BackgroundWorkerTests(unittest.IsolatedAsyncioTestCase):
    def worker_channel(self, client) -> RuntimeChannel:
        channel = RuntimeChannel()
        BackgroundWorker(client).register(channel)
        return channel

    async def test_success_is_wrapped(self):
        client = StaticClient(200, {"fixes": []})
        channel = self.worker_channel(client)
        response = await channel.send_message(
            {"action": "getApiResponse", "data": {"endpoint": "fix-table", "payload": {"values": [[1]]}}}
        )
        self.assertEqual(response, {"success": True, "data": {"fixes": []}})
        self.assertEqual(client.calls, [("fix-table", {"values": [[1]]})])

    async def test_api_error_is_wrapped_with_message(self):
        channel = self.worker_channel(StaticClient(500, {"error": "OpenRouter API error: down"}))
        response = await channel.send_message(
            {"action": "getApiResponse", "data": {"endpoint": "create-formula", "payload": {"description": "x"}}}
        )
        self.assertEqual(response["success"], False)
        self.assertEqual(response["error"], "OpenRouter API error: down")
        self.assertEqual(response["errorType"], "TransportError")

    async def test_error_type_survives_the_hop(self):
        channel = self.worker_channel(StaticClient(500, {"error": "Could not parse AI response", "errorType": "ParseError"}))
        response = await channel.send_message(
            {"action": "getApiResponse", "data": {"endpoint": "create-formula", "payload": {}}}
        )
        self.assertEqual(response["errorType"], ParseError.__name__)

    async def test_unknown_endpoint_is_rejected_without_request(self):
        client = StaticClient(200, {})
        channel = self.worker_channel(client)
        response = await channel.send_message({"action": "getApiResponse", "data": {"endpoint": "drop-table"}})
        self.assertFalse(response["success"])
        self.assertEqual(client.calls, [])

    async def test_unknown_action_gets_no_reply(self):
        channel = self.worker_channel(StaticClient(200, {}))
        with self.assertRaises(BridgeError):
            await channel.send_message({"action": "formatDisk"})

    async def test_client_crash_still_replies_once(self):
        client = mock.Mock()
        client.post.side_effect = RuntimeError("boom")
        channel = self.worker_channel(client)
        with self.assertLogs("sheet_assist.background", level="ERROR"):
            response = await channel.send_message({"action": "getApiResponse", "data": {"endpoint": "fix-table"}})
        self.assertEqual(response, {"success": False, "error": "boom"})

    async def test_in_process_client_runs_api_handlers(self):
        service = mock.Mock(spec=CompletionService)
        service.request_fixes.return_value = [FixRecord("A2", "empty_cell", None, "0", "blank qty")]
        channel = self.worker_channel(InProcessApiClient(service))
        response = await channel.send_message(
            {"action": "getApiResponse", "data": {"endpoint": "fix-table", "payload": {"range": "A1:A2", "values": [["qty"], [None]]}}}
        )
        self.assertTrue(response["success"])
        self.assertEqual(response["data"]["fixes"][0]["cell"], "A2")

    async def test_in_process_missing_key_keeps_error_type(self):
        channel = self.worker_channel(InProcessApiClient(CompletionService(Settings())))
        response = await channel.send_message(
            {"action": "getApiResponse", "data": {"endpoint": "create-formula", "payload": {"description": "sum"}}}
        )
        self.assertEqual(response, {"success": False, "error": "API key not configured", "errorType": "ConfigurationError"})


if __name__ == "__main__":
    unittest.main()
