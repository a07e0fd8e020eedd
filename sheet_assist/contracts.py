"""Wire contracts for the messages exchanged between sheet-assist contexts."""

from __future__ import annotations

import json
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any

from sheet_assist.models import RemoteCall, RemoteResult

EXECUTE_MESSAGE = "AI_SHEETS_EXECUTE"
RESPONSE_MESSAGE = "AI_SHEETS_RESPONSE"
API_REQUEST_ACTION = "getApiResponse"

GET_SELECTED_RANGE = "getSelectedRange"
GET_SHEET_CONTEXT = "getSheetContext"
APPLY_FIXES = "applyFixes"
APPLY_FORMULA = "applyFormula"
HOST_FUNCTIONS = frozenset({GET_SELECTED_RANGE, GET_SHEET_CONTEXT, APPLY_FIXES, APPLY_FORMULA})
BACKGROUND_FUNCTIONS = frozenset({API_REQUEST_ACTION})

FIX_TABLE_ENDPOINT = "fix-table"
CREATE_FORMULA_ENDPOINT = "create-formula"
API_ENDPOINTS = (FIX_TABLE_ENDPOINT, CREATE_FORMULA_ENDPOINT)

CONTRACT_VERSIONS = {
    "sheet_assist.fix_table": "1.0.0",
    "sheet_assist.create_formula": "1.0.0",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def build_contract(name: str) -> dict[str, str]:
    version = CONTRACT_VERSIONS[name]
    return {"name": name, "version": version}


def json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def dumps(payload: Any) -> str:
    return json.dumps(payload, default=json_default, ensure_ascii=False)


def build_execute_message(call: RemoteCall) -> dict[str, Any]:
    return {
        "type": EXECUTE_MESSAGE,
        "functionName": call.function_name,
        "params": call.params,
        "correlationId": call.correlation_id,
    }


def build_response_message(result: RemoteResult) -> dict[str, Any]:
    message = {
        "type": RESPONSE_MESSAGE,
        "functionName": result.function_name,
        "correlationId": result.correlation_id,
        "result": result.value,
    }
    if result.error is not None:
        message["result"] = None
        message["error"] = result.error
    return message


def parse_execute_message(message: Any) -> RemoteCall | None:
    if not isinstance(message, dict) or message.get("type") != EXECUTE_MESSAGE:
        return None
    function_name = message.get("functionName")
    correlation_id = message.get("correlationId")
    if not isinstance(function_name, str) or not isinstance(correlation_id, str):
        return None
    return RemoteCall(function_name, message.get("params"), correlation_id)


def parse_response_message(message: Any) -> RemoteResult | None:
    if not isinstance(message, dict) or message.get("type") != RESPONSE_MESSAGE:
        return None
    function_name = message.get("functionName")
    if not isinstance(function_name, str):
        return None
    error = message.get("error")
    return RemoteResult(
        function_name=function_name,
        correlation_id=message.get("correlationId"),
        value=message.get("result"),
        error=str(error) if error is not None else None,
    )


def build_api_request(endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"action": API_REQUEST_ACTION, "data": {"endpoint": endpoint, "payload": payload}}


def build_api_response(*, data: Any = None, error: str | None = None, error_type: str | None = None) -> dict[str, Any]:
    if error is not None:
        response = {"success": False, "error": error}
        if error_type:
            response["errorType"] = error_type
        return response
    return {"success": True, "data": data}
