from __future__ import annotations

import asyncio
import json
import unittest
from unittest import mock

from openpyxl import Workbook

from sheet_assist.config import Settings
from sheet_assist.errors import HostOperationError, InvalidFormula, TransportError, ValidationError
from sheet_assist.host import WorkbookHost
from sheet_assist.models import FixRecord, FormulaDescriptor
from sheet_assist.orchestrator import (
    CANCELLED,
    CONFIRMED,
    FAILED,
    OPEN,
    REPLACED,
    ActionOrchestrator,
    NullRenderer,
    RemoteCompletionClient,
    completion_timeout,
)
from sheet_assist.runtime import build_runtime


def provider_reply(content: str, status_code: int = 200, text: str = "") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.text = text
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


def orders_host() -> WorkbookHost:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Orders"
    sheet.append(["item", "qty", "price", "total"])
    sheet.append(["pen", "3", 1.5, None])
    sheet.append(["ink", 2, 4.0, None])
    sheet.append(["pad", None, 2.0, None])
    host = WorkbookHost(workbook)
    host.select("A1:D4")
    return host


class GatedCompletion:
    """Completion stub that answers only once ``gate`` is set."""

    def __init__(self, fixes=(), formula: FormulaDescriptor | None = None) -> None:
        self.fixes = list(fixes)
        self.formula = formula
        self.gate = asyncio.Event()

    async def request_fixes(self, range_address, values):
        await self.gate.wait()
        return self.fixes

    async def request_formula(self, description, context):
        await self.gate.wait()
        return self.formula


class EndToEndTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.host = orders_host()
        self.renderer = NullRenderer()
        self.runtime = build_runtime(self.host, settings=Settings(api_key="sk-test"), renderer=self.renderer)
        self.orchestrator = self.runtime.orchestrator

    def assert_bridge_clean(self) -> None:
        self.assertEqual(self.runtime.bridge.host.pending_count, 0)
        self.assertEqual(self.runtime.page.injected, [])

    async def test_fix_table_preview_then_confirm(self):
        fixes = [
            {"cell": "B2", "type": "data_type", "oldValue": "3", "newValue": "3", "reason": "number as text"},
            {"cell": "B4", "type": "empty_cell", "oldValue": None, "newValue": 0, "reason": "missing qty"},
        ]
        with mock.patch("sheet_assist.provider.requests.post", return_value=provider_reply(json.dumps(fixes))) as post:
            session = await self.orchestrator.propose_fixes()
        self.assertIn("A1:D4", post.call_args.kwargs["json"]["messages"][0]["content"])
        self.assertEqual(session.state, OPEN)
        self.assertTrue(session.ready)
        self.assertEqual([fix.cell for fix in session.fixes], ["B2", "B4"])
        self.assertEqual(self.host.sheet["B2"].value, "3")

        outcome = await self.orchestrator.confirm(session)
        self.assertEqual(outcome.applied, 2)
        self.assertFalse(outcome.partial)
        self.assertEqual(self.host.sheet["B2"].value, 3)
        self.assertEqual(self.host.sheet["B4"].value, 0)
        self.assertEqual(session.state, CONFIRMED)
        self.assertIsNone(self.orchestrator.active)
        self.assertEqual(self.renderer.notifications[-1], "Applied 2 fixes")
        self.assert_bridge_clean()

    async def test_provider_error_shows_text_and_leaves_workbook_unchanged(self):
        reply = provider_reply("", status_code=503, text="upstream unavailable")
        with mock.patch("sheet_assist.provider.requests.post", return_value=reply):
            session = await self.orchestrator.propose_fixes()
        self.assertIn("upstream unavailable", session.error)
        self.assertIsInstance(session.failure, TransportError)
        self.assertFalse(session.ready)
        with self.assertRaises(ValidationError):
            await self.orchestrator.confirm(session)
        self.assertEqual(self.host.sheet["B2"].value, "3")
        self.assertIsNone(self.host.sheet["D2"].value)
        self.assert_bridge_clean()

    async def test_empty_selection_asks_for_a_range(self):
        self.host.select("F10:G12")
        session = await self.orchestrator.propose_fixes()
        self.assertIsNone(session)
        self.assertEqual(self.renderer.notifications, ["Please select a range first"])

    async def test_formula_preview_then_confirm_with_autofill(self):
        self.host.select("D2")
        answer = '```json\n{"formula": "=B2*C2", "explanation": "qty x price", "targetCell": "D2", "useAutofill": true}\n```'
        with mock.patch("sheet_assist.provider.requests.post", return_value=provider_reply(answer)) as post:
            session = await self.orchestrator.propose_formula("line total")
        prompt = post.call_args.kwargs["json"]["messages"][0]["content"]
        self.assertIn("item, qty, price, total", prompt)
        self.assertIn("line total", prompt)
        self.assertEqual(session.context.current_cell, "D2")
        self.assertEqual(session.formula.formula, "=B2*C2")

        outcome = await self.orchestrator.confirm(session)
        self.assertEqual(outcome.cells, ["D2", "D3", "D4"])
        self.assertEqual(self.host.sheet["D4"].value, "=B4*C4")
        self.assertEqual(self.renderer.notifications[-1], "Formula applied")

    async def test_empty_description_is_rejected_locally(self):
        with mock.patch("sheet_assist.provider.requests.post") as post:
            self.assertIsNone(await self.orchestrator.propose_formula("   "))
        post.assert_not_called()
        self.assertEqual(self.renderer.notifications, ["Please enter a description"])

    async def test_formula_without_prefix_is_never_offered(self):
        with mock.patch("sheet_assist.provider.requests.post", return_value=provider_reply('{"formula": "B2*C2"}')):
            session = await self.orchestrator.propose_formula("line total")
        self.assertIsInstance(session.failure, InvalidFormula)
        self.assertEqual(session.error, "Invalid formula generated")
        self.assertIsNone(session.formula)

    async def test_unparseable_formula_answer_keeps_parse_error_type(self):
        with mock.patch("sheet_assist.provider.requests.post", return_value=provider_reply("Sorry, no idea.")):
            session = await self.orchestrator.propose_formula("line total")
        self.assertEqual(type(session.failure).__name__, "ParseError")
        self.assertEqual(session.error, "Could not parse AI response")


class DialogLifecycleTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.host = orders_host()
        self.renderer = NullRenderer()
        self.runtime = build_runtime(self.host, settings=Settings(api_key="sk-test"), renderer=self.renderer)

    def orchestrator_with(self, completion) -> ActionOrchestrator:
        return ActionOrchestrator(self.runtime.bridge, self.renderer, completion)

    async def test_replaced_dialog_discards_late_result(self):
        completion = GatedCompletion(fixes=[FixRecord("B2", "data_type", "3", 3, "")])
        orchestrator = self.orchestrator_with(completion)
        first = asyncio.get_running_loop().create_task(orchestrator.propose_fixes())
        await asyncio.sleep(0.01)
        stale = orchestrator.active
        second = orchestrator.open_dialog("create_formula", "Create Formula")
        self.assertEqual(stale.state, REPLACED)
        completion.gate.set()
        session = await first
        self.assertIs(session, stale)
        self.assertEqual(session.fixes, [])
        self.assertIs(orchestrator.active, second)
        with self.assertRaises(ValidationError):
            await orchestrator.confirm(stale)
        self.assertEqual(self.host.sheet["B2"].value, "3")

    async def test_cancel_while_loading(self):
        completion = GatedCompletion(formula=FormulaDescriptor("=1"))
        orchestrator = self.orchestrator_with(completion)
        task = asyncio.get_running_loop().create_task(orchestrator.propose_formula("one"))
        await asyncio.sleep(0.01)
        session = orchestrator.active
        orchestrator.cancel(session)
        completion.gate.set()
        await task
        self.assertEqual(session.state, CANCELLED)
        self.assertIsNone(session.formula)
        self.assertIsNone(orchestrator.active)

    async def test_partial_application_is_reported(self):
        completion = GatedCompletion(
            fixes=[FixRecord("B2", "data_type", "3", "3", ""), FixRecord("??", "empty_cell", None, 1, "")]
        )
        completion.gate.set()
        orchestrator = self.orchestrator_with(completion)
        session = await orchestrator.propose_fixes()
        outcome = await orchestrator.confirm(session)
        self.assertTrue(outcome.partial)
        self.assertEqual(outcome.applied, 1)
        self.assertEqual([item["cell"] for item in outcome.failed], ["??"])
        self.assertEqual(self.host.sheet["B2"].value, 3)
        self.assertIn("Applied 1 of 2 fixes", self.renderer.notifications[-1])
        self.assertEqual(session.state, CONFIRMED)

    async def test_all_fixes_failing_is_a_host_error(self):
        completion = GatedCompletion(fixes=[FixRecord("??", "empty_cell", None, 1, "")])
        completion.gate.set()
        orchestrator = self.orchestrator_with(completion)
        session = await orchestrator.propose_fixes()
        with self.assertRaises(HostOperationError):
            await orchestrator.confirm(session)
        self.assertEqual(session.state, FAILED)
        self.assertIsNone(orchestrator.active)

    async def test_host_rejecting_formula_fails_the_dialog(self):
        completion = GatedCompletion(formula=FormulaDescriptor("=A1", target_cell="Nowhere!A1"))
        completion.gate.set()
        orchestrator = self.orchestrator_with(completion)
        session = await orchestrator.propose_formula("copy a1")
        with self.assertRaises(HostOperationError):
            await orchestrator.confirm(session)
        self.assertEqual(session.state, FAILED)
        self.assertIn("Sheet not found", session.error)


class CompletionTimeoutTests(unittest.TestCase):
    def test_default_client_outlasts_the_provider(self):
        runtime = build_runtime(orders_host(), settings=Settings(api_key="sk-test", bridge_timeout=30.0))
        orchestrator = ActionOrchestrator(runtime.bridge)
        self.assertEqual(orchestrator.completion.timeout, 90.0)
        self.assertEqual(runtime.orchestrator.completion.timeout, 90.0)

    def test_runtime_uses_configured_provider_timeout(self):
        settings = Settings(api_key="sk-test", provider_timeout=10.0, bridge_timeout=5.0)
        runtime = build_runtime(orders_host(), settings=settings)
        self.assertEqual(runtime.orchestrator.completion.timeout, 15.0)

    def test_disabled_bridge_timeout_stays_disabled(self):
        self.assertEqual(completion_timeout(0), 0)
        self.assertEqual(completion_timeout(None), 0)
        runtime = build_runtime(orders_host(), settings=Settings(api_key="sk-test", bridge_timeout=0))
        self.assertEqual(RemoteCompletionClient(runtime.bridge).timeout, 0)


if __name__ == "__main__":
    unittest.main()
