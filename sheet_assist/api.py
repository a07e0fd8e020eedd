"""HTTP API consumed by the background context.

``POST /fix-table`` and ``POST /create-formula`` wrap ``CompletionService``.
``dispatch_endpoint`` holds the request handling so the same code serves the
FastAPI routes and ``InProcessApiClient``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from pydantic import ValidationError as RequestValidationFailed
from starlette.exceptions import HTTPException as StarletteHTTPException

from sheet_assist import __version__
from sheet_assist.completion import CompletionService
from sheet_assist.contracts import CREATE_FORMULA_ENDPOINT, FIX_TABLE_ENDPOINT
from sheet_assist.errors import SheetAssistError
from sheet_assist.models import SheetContext

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class FixTableRequest(BaseModel):
    range: Optional[str] = ""
    values: list[list[Any]]


class CreateFormulaRequest(BaseModel):
    description: str
    context: Optional[dict[str, Any]] = None


def fix_table(service: CompletionService, payload: Any) -> tuple[int, dict[str, Any]]:
    try:
        request = FixTableRequest.model_validate(payload)
    except RequestValidationFailed:
        return 400, {"error": "Invalid data format"}
    fixes = service.request_fixes(request.range or "", request.values)
    return 200, {"fixes": [fix.to_dict() for fix in fixes]}


def create_formula(service: CompletionService, payload: Any) -> tuple[int, dict[str, Any]]:
    try:
        request = CreateFormulaRequest.model_validate(payload)
    except RequestValidationFailed:
        return 400, {"error": "Description is required"}
    if not request.description.strip():
        return 400, {"error": "Description is required"}
    descriptor = service.request_formula(request.description, SheetContext.from_dict(request.context))
    return 200, descriptor.to_dict()


HANDLERS = {
    FIX_TABLE_ENDPOINT: fix_table,
    CREATE_FORMULA_ENDPOINT: create_formula,
}


def dispatch_endpoint(service: CompletionService, endpoint: str, payload: Any) -> tuple[int, dict[str, Any]]:
    handler = HANDLERS.get(endpoint)
    if handler is None:
        return 404, {"error": f"Unknown endpoint: {endpoint}"}
    try:
        return handler(service, payload)
    except SheetAssistError as exc:
        logger.warning("Error in %s: %s", endpoint, exc)
        return 500, {"error": str(exc) or "Internal server error", "errorType": type(exc).__name__}
    except Exception:
        logger.exception("Unexpected error in %s", endpoint)
        return 500, {"error": "Internal server error"}


async def _handle(request: Request, endpoint: str) -> Response:
    if request.method == "OPTIONS":
        return Response(status_code=200)
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None
    status, body = await run_in_threadpool(dispatch_endpoint, request.app.state.service, endpoint, payload)
    return JSONResponse(body, status_code=status)


def create_app(service: CompletionService | None = None) -> FastAPI:
    app = FastAPI(
        title="sheet-assist API",
        version=__version__,
        description="Fix-table and create-formula completions for spreadsheet hosts",
    )
    app.state.service = service or CompletionService()

    @app.middleware("http")
    async def add_cors_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.api_route(f"/{FIX_TABLE_ENDPOINT}", methods=["POST", "OPTIONS"])
    async def fix_table_route(request: Request) -> Response:
        return await _handle(request, FIX_TABLE_ENDPOINT)

    @app.api_route(f"/{CREATE_FORMULA_ENDPOINT}", methods=["POST", "OPTIONS"])
    async def create_formula_route(request: Request) -> Response:
        return await _handle(request, CREATE_FORMULA_ENDPOINT)

    return app
