from __future__ import annotations

import json
import unittest
from datetime import datetime
from decimal import Decimal

from sheet_assist.contracts import (
    CONTRACT_VERSIONS,
    EXECUTE_MESSAGE,
    RESPONSE_MESSAGE,
    build_api_request,
    build_api_response,
    build_contract,
    build_execute_message,
    build_response_message,
    dumps,
    parse_execute_message,
    parse_response_message,
    utc_now_iso,
)
from sheet_assist.errors import ConfigurationError, InvalidFormula, ParseError, TransportError, error_from_wire
from sheet_assist.models import FixRecord, RangeSnapshot, RemoteCall, RemoteResult, SheetContext


class MessageContractTests(unittest.TestCase):
    def test_execute_message_round_trips_through_json(self):
        call = RemoteCall("applyFormula", {"formula": "=A1"})
        message = json.loads(dumps(build_execute_message(call)))
        self.assertEqual(message["type"], EXECUTE_MESSAGE)
        self.assertEqual(message["correlationId"], call.correlation_id)
        self.assertEqual(parse_execute_message(message), call)

    def test_response_message_carries_error_without_result(self):
        call = RemoteCall("applyFixes")
        message = build_response_message(RemoteResult.failure(call, "Range not found"))
        self.assertEqual(message["type"], RESPONSE_MESSAGE)
        self.assertIsNone(message["result"])
        parsed = parse_response_message(message)
        self.assertFalse(parsed.ok)
        self.assertEqual(parsed.error, "Range not found")
        self.assertEqual(parsed.correlation_id, call.correlation_id)

    def test_successful_none_value_is_still_ok(self):
        call = RemoteCall("getSelectedRange")
        parsed = parse_response_message(build_response_message(RemoteResult.success(call, None)))
        self.assertTrue(parsed.ok)
        self.assertIsNone(parsed.value)

    def test_foreign_messages_are_ignored(self):
        self.assertIsNone(parse_execute_message({"type": "SOMETHING_ELSE"}))
        self.assertIsNone(parse_execute_message("AI_SHEETS_EXECUTE"))
        self.assertIsNone(parse_execute_message({"type": EXECUTE_MESSAGE, "functionName": "x"}))
        self.assertIsNone(parse_response_message({"type": RESPONSE_MESSAGE}))

    def test_correlation_ids_are_unique(self):
        self.assertEqual(len({RemoteCall("getSheetContext").correlation_id for _ in range(200)}), 200)

    def test_api_envelopes(self):
        self.assertEqual(
            build_api_request("fix-table", {"range": "A1"}),
            {"action": "getApiResponse", "data": {"endpoint": "fix-table", "payload": {"range": "A1"}}},
        )
        self.assertEqual(build_api_response(data={"fixes": []}), {"success": True, "data": {"fixes": []}})
        self.assertEqual(
            build_api_response(error="boom", error_type="ParseError"),
            {"success": False, "error": "boom", "errorType": "ParseError"},
        )

    def test_dumps_handles_workbook_values(self):
        payload = json.loads(dumps({"when": datetime(2024, 1, 5, 9, 30), "amount": Decimal("2.5"), "cells": ("A1",)}))
        self.assertEqual(payload, {"when": "2024-01-05T09:30:00", "amount": 2.5, "cells": ["A1"]})

    def test_versioned_contracts(self):
        contract = build_contract("sheet_assist.fix_table")
        self.assertEqual(contract["version"], CONTRACT_VERSIONS["sheet_assist.fix_table"])
        self.assertTrue(utc_now_iso().endswith("Z"))


class ModelWireTests(unittest.TestCase):
    def test_fix_record_uses_type_on_the_wire(self):
        fix = FixRecord.from_dict({"cell": " B2 ", "type": "formula", "oldValue": "#REF!", "newValue": "=A2", "reason": "r"})
        self.assertEqual(fix.kind, "formula_error")
        self.assertEqual(fix.cell, "B2")
        self.assertTrue(fix.writes_formula)
        self.assertEqual(fix.to_dict()["type"], "formula_error")

    def test_sheet_context_defaults_when_unreadable(self):
        self.assertEqual(SheetContext.from_dict(None), SheetContext("Sheet1", (), "A1", 1, 1))
        context = SheetContext.from_dict({"sheetName": "Sales", "headers": "nope", "lastRow": "x"})
        self.assertEqual(context.headers, ())
        self.assertEqual(context.last_row, 1)

    def test_range_snapshot_is_frozen_and_detects_blank_ranges(self):
        snapshot = RangeSnapshot.from_dict({"range": "A1:B2", "values": [[None, " "], ["", None]]})
        self.assertTrue(snapshot.is_empty)
        self.assertEqual((snapshot.num_rows, snapshot.num_cols), (2, 2))
        with self.assertRaises(Exception):
            snapshot.range_address = "C3"
        self.assertEqual(RangeSnapshot.from_dict(snapshot.to_dict()), snapshot)


class WireErrorTests(unittest.TestCase):
    def test_known_error_types_are_rebuilt(self):
        self.assertIsInstance(error_from_wire("ParseError", "x"), ParseError)
        self.assertIsInstance(error_from_wire("InvalidFormula", "x"), InvalidFormula)
        self.assertIsInstance(error_from_wire("ConfigurationError", "x"), ConfigurationError)

    def test_unknown_error_types_become_transport_errors(self):
        error = error_from_wire("KeyError", "boom")
        self.assertIsInstance(error, TransportError)
        self.assertEqual(str(error), "boom")
        self.assertIsInstance(error_from_wire(None, "x"), TransportError)


if __name__ == "__main__":
    unittest.main()
