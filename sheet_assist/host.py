"""Host-document context: an openpyxl workbook and the executors that drive it.

The host can read and write spreadsheet state but never touches the network
or the UI. Callers reach it only through ``AI_SHEETS_EXECUTE`` messages on the
page bus, answered by a single-use ``ExecutorArtifact``.
"""

from __future__ import annotations

import asyncio
import csv
import io
import logging
from pathlib import Path
from typing import Any, Callable

import chardet
from openpyxl import Workbook, load_workbook
from openpyxl.formula.translate import Translator
from openpyxl.utils.cell import coordinate_from_string, get_column_letter, range_boundaries
from openpyxl.worksheet.views import Selection

from sheet_assist.contracts import (
    APPLY_FIXES,
    APPLY_FORMULA,
    GET_SELECTED_RANGE,
    GET_SHEET_CONTEXT,
    build_response_message,
    parse_execute_message,
)
from sheet_assist.messaging import MessageBus
from sheet_assist.models import FixRecord, RemoteCall, RemoteResult, SheetContext

logger = logging.getLogger(__name__)

WORKBOOK_FORMATS = {".xlsx", ".xlsm"}
TEXT_FORMATS = {".csv", ".tsv", ".txt"}
SUPPORTED_FORMATS = WORKBOOK_FORMATS | TEXT_FORMATS


def formula_text(value: Any) -> str:
    if isinstance(value, str) and value.startswith("="):
        return value
    text = getattr(value, "text", None)
    if isinstance(text, str) and text.startswith("="):
        return text
    return ""


def coerce_number(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    raw = value.strip()
    if not raw:
        return value
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return value


def a1_range(min_col: int, min_row: int, max_col: int, max_row: int) -> str:
    start = f"{get_column_letter(min_col)}{min_row}"
    end = f"{get_column_letter(max_col)}{max_row}"
    return start if start == end else f"{start}:{end}"


def detect_encoding(raw: bytes) -> str:
    detected = chardet.detect(raw).get("encoding") or "utf-8"
    if detected.upper().replace("-", "") == "ASCII":
        return "utf-8"
    return detected


def workbook_from_text(path: Path) -> Workbook:
    raw = path.read_bytes()
    text = raw.decode(detect_encoding(raw), errors="replace").lstrip("\ufeff")
    delimiter = "\t" if path.suffix.lower() == ".tsv" else ","
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = path.stem[:31] or "Sheet1"
    for row in csv.reader(io.StringIO(text), delimiter=delimiter):
        sheet.append([coerce_number(value) if value != "" else None for value in row])
    return workbook


class WorkbookHost:
    """Spreadsheet state as seen by the host-document context.

    ``workbook`` holds formulas; ``cached`` (optional) holds the values the
    spreadsheet application last calculated, loaded with ``data_only=True``.
    """

    def __init__(self, workbook: Workbook, cached: Workbook | None = None, sheet_name: str | None = None) -> None:
        self.workbook = workbook
        self.cached = cached
        if sheet_name is not None:
            if sheet_name not in workbook.sheetnames:
                raise ValueError(f"Sheet not found: {sheet_name}")
            workbook.active = workbook.sheetnames.index(sheet_name)

    @classmethod
    def open(cls, path: Path | str, sheet_name: str | None = None) -> "WorkbookHost":
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix not in SUPPORTED_FORMATS:
            raise ValueError(
                f"Unsupported file type '{suffix or '[missing extension]'}'. "
                f"Supported: {', '.join(sorted(SUPPORTED_FORMATS))}"
            )
        if suffix in TEXT_FORMATS:
            return cls(workbook_from_text(path), sheet_name=sheet_name)
        keep_vba = suffix == ".xlsm"
        try:
            workbook = load_workbook(path, keep_vba=keep_vba)
            cached = load_workbook(path, data_only=True)
        except Exception as exc:
            raise ValueError(f"Could not read workbook: {exc}") from exc
        return cls(workbook, cached, sheet_name=sheet_name)

    def save(self, path: Path | str) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.workbook.save(path)
        return path

    @property
    def sheet(self):
        return self.workbook.active

    def _cached_sheet(self):
        if self.cached is None or self.sheet.title not in self.cached.sheetnames:
            return None
        return self.cached[self.sheet.title]

    def _resolve_sheet(self, address: str) -> tuple[Any, str]:
        if "!" not in address:
            return self.sheet, address
        sheet_name, address = address.rsplit("!", 1)
        sheet_name = sheet_name.strip().strip("'")
        if sheet_name not in self.workbook.sheetnames:
            raise ValueError(f"Sheet not found: {sheet_name}")
        return self.workbook[sheet_name], address

    def selected_range_address(self) -> str | None:
        selection = getattr(self.sheet.sheet_view, "selection", None) or []
        if not selection:
            return None
        sqref = selection[0].sqref or selection[0].activeCell
        if not sqref:
            return None
        return str(sqref).split()[0]

    def select(self, range_address: str) -> str:
        min_col, min_row, max_col, max_row = self._bounds(range_address)
        address = a1_range(min_col, min_row, max_col, max_row)
        view = self.sheet.sheet_view
        if not view.selection:
            view.selection = [Selection()]
        selection = view.selection[0]
        selection.sqref = address
        selection.activeCell = a1_range(min_col, min_row, min_col, min_row)
        return address

    def select_used_range(self) -> str:
        return self.select(self.sheet.dimensions)

    def _bounds(self, range_address: str) -> tuple[int, int, int, int]:
        min_col, min_row, max_col, max_row = range_boundaries(range_address.replace("$", "").strip())
        # Whole-column and whole-row references stop at the used area.
        min_col = min_col or 1
        min_row = min_row or 1
        max_col = max_col or max(self.sheet.max_column, min_col)
        max_row = max_row or max(self.sheet.max_row, min_row)
        return min_col, min_row, max_col, max_row

    def _cell_value(self, cached_sheet, cell) -> Any:
        formula = formula_text(cell.value)
        if formula:
            # Never-calculated formulas have no cached value; show the formula instead.
            cached = cached_sheet[cell.coordinate].value if cached_sheet is not None else None
            return formula if cached is None else cached
        return cell.value

    def get_selected_range(self) -> dict[str, Any] | None:
        address = self.selected_range_address()
        if not address:
            return None
        min_col, min_row, max_col, max_row = self._bounds(address)
        cached_sheet = self._cached_sheet()
        values: list[list[Any]] = []
        formulas: list[list[str]] = []
        for row in self.sheet.iter_rows(min_row=min_row, max_row=max_row, min_col=min_col, max_col=max_col):
            values.append([self._cell_value(cached_sheet, cell) for cell in row])
            formulas.append([formula_text(cell.value) for cell in row])
        return {
            "range": a1_range(min_col, min_row, max_col, max_row),
            "values": values,
            "formulas": formulas,
            "numRows": max_row - min_row + 1,
            "numCols": max_col - min_col + 1,
            "startRow": min_row,
            "startCol": min_col,
        }

    def get_sheet_context(self) -> dict[str, Any]:
        try:
            sheet = self.sheet
            last_col = sheet.max_column
            headers = ["" if value is None else str(value) for value in next(
                sheet.iter_rows(min_row=1, max_row=1, max_col=last_col, values_only=True), ()
            )]
            if all(header == "" for header in headers):
                headers = []
            return SheetContext(
                sheet_name=sheet.title,
                headers=tuple(headers),
                current_cell=self.selected_range_address() or "A1",
                last_row=sheet.max_row,
                last_col=last_col,
            ).to_dict()
        except Exception:
            logger.warning("Could not read sheet context; using defaults", exc_info=True)
            return SheetContext().to_dict()

    def _single_cell(self, address: str):
        sheet, coordinate = self._resolve_sheet(address.strip())
        column, row = coordinate_from_string(coordinate.replace("$", ""))
        return sheet, f"{column}{row}"

    def _write(self, sheet, coordinate: str, value: Any) -> None:
        sheet[coordinate].value = value
        if self.cached is not None and sheet.title in self.cached.sheetnames:
            self.cached[sheet.title][coordinate].value = None if formula_text(value) else value

    def apply_fix(self, fix: FixRecord) -> None:
        sheet, coordinate = self._single_cell(fix.cell)
        value = fix.new_value
        if not (fix.writes_formula and formula_text(value)):
            value = coerce_number(value) if fix.kind == "data_type" else value
        self._write(sheet, coordinate, value)

    def apply_fixes(self, fixes: list[Any]) -> dict[str, Any]:
        """Write each fix independently; a failing cell does not undo the others."""
        applied = 0
        failed: list[dict[str, str]] = []
        for item in fixes or []:
            fix = item if isinstance(item, FixRecord) else FixRecord.from_dict(item if isinstance(item, dict) else {})
            try:
                self.apply_fix(fix)
            except Exception as exc:
                logger.warning("Could not apply fix to %r: %s", fix.cell, exc)
                failed.append({"cell": fix.cell, "error": str(exc) or type(exc).__name__})
            else:
                applied += 1
        return {"success": not failed, "fixedCount": applied, "failed": failed}

    def apply_formula(self, formula: str, target_cell: str | None = None, use_autofill: bool = False) -> dict[str, Any]:
        if not isinstance(formula, str) or not formula.startswith("="):
            raise ValueError("Formula must start with =")
        if target_cell:
            sheet, address = self._resolve_sheet(target_cell.strip())
        else:
            sheet, address = self.sheet, self.selected_range_address() or "A1"
        min_col, min_row, max_col, max_row = range_boundaries(address.replace("$", ""))
        min_col, min_row = min_col or 1, min_row or 1
        max_col, max_row = max_col or min_col, max_row or min_row
        origin = f"{get_column_letter(min_col)}{min_row}"
        last_row = sheet.max_row
        self._write(sheet, origin, formula)

        filled = [origin]
        fill_to = max_row
        if use_autofill and min_row == max_row and last_row > min_row:
            fill_to = last_row
        for col in range(min_col, max_col + 1):
            for row in range(min_row, fill_to + 1):
                coordinate = f"{get_column_letter(col)}{row}"
                if coordinate == origin:
                    continue
                self._write(sheet, coordinate, Translator(formula, origin=origin).translate_formula(coordinate))
                filled.append(coordinate)
        return {"success": True, "cells": filled}


def execute(host: WorkbookHost, call: RemoteCall) -> RemoteResult:
    params = call.params if isinstance(call.params, dict) else {}
    handlers: dict[str, Callable[[], Any]] = {
        GET_SELECTED_RANGE: host.get_selected_range,
        GET_SHEET_CONTEXT: host.get_sheet_context,
        APPLY_FIXES: lambda: host.apply_fixes(params.get("fixes") or []),
        APPLY_FORMULA: lambda: host.apply_formula(
            params.get("formula"),
            params.get("targetCell"),
            bool(params.get("useAutofill")),
        ),
    }
    handler = handlers.get(call.function_name)
    if handler is None:
        return RemoteResult.failure(call, f"Unknown function: {call.function_name}")
    try:
        return RemoteResult.success(call, handler())
    except Exception as exc:
        logger.warning("Host function %s failed: %s", call.function_name, exc, exc_info=True)
        return RemoteResult.failure(call, str(exc) or type(exc).__name__)


class ExecutorArtifact:
    """Executor injected for exactly one call, identified by its correlation id."""

    def __init__(self, host: WorkbookHost, correlation_id: str) -> None:
        self.host = host
        self.correlation_id = correlation_id
        self.bus: MessageBus | None = None
        self.handled = False
        self._tasks: set[asyncio.Task] = set()

    def attach(self, bus: MessageBus) -> None:
        self.bus = bus
        bus.add_listener(self.on_message)

    def detach(self) -> None:
        if self.bus is not None:
            self.bus.remove_listener(self.on_message)

    def on_message(self, message: Any) -> None:
        call = parse_execute_message(message)
        if call is None or call.correlation_id != self.correlation_id or self.handled:
            return
        self.handled = True
        task = asyncio.get_running_loop().create_task(self.run(call))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run(self, call: RemoteCall) -> None:
        result = execute(self.host, call)
        if self.bus is not None:
            self.bus.post_message(build_response_message(result))
