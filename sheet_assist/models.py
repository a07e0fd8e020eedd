from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

FIX_KINDS = ("formula_error", "data_type", "duplicate", "empty_cell", "date_format")
FIX_KIND_ALIASES = {"formula": "formula_error"}


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def freeze_grid(rows: Any) -> tuple[tuple[Any, ...], ...]:
    if not rows:
        return ()
    return tuple(tuple(row) if isinstance(row, (list, tuple)) else (row,) for row in rows)


def thaw_grid(rows: tuple[tuple[Any, ...], ...]) -> list[list[Any]]:
    return [list(row) for row in rows]


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def text_or_empty(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def int_or(value: Any, default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class RemoteCall:
    function_name: str
    params: Any = None
    correlation_id: str = field(default_factory=new_correlation_id)


@dataclass(frozen=True)
class RemoteResult:
    """Outcome of one RemoteCall: either ``value`` or ``error`` is meaningful."""

    function_name: str
    correlation_id: str | None
    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, call: RemoteCall, value: Any) -> "RemoteResult":
        return cls(call.function_name, call.correlation_id, value=value)

    @classmethod
    def failure(cls, call: RemoteCall, error: str) -> "RemoteResult":
        return cls(call.function_name, call.correlation_id, error=error or "Unknown error")


@dataclass(frozen=True)
class RangeSnapshot:
    range_address: str
    values: tuple[tuple[Any, ...], ...]
    formulas: tuple[tuple[str, ...], ...] = ()
    num_rows: int = 0
    num_cols: int = 0
    start_row: int = 1
    start_col: int = 1

    @property
    def is_empty(self) -> bool:
        return all(is_blank(value) for row in self.values for value in row)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RangeSnapshot":
        values = freeze_grid(data.get("values"))
        return cls(
            range_address=text_or_empty(data.get("range")),
            values=values,
            formulas=freeze_grid(data.get("formulas")),
            num_rows=int_or(data.get("numRows"), len(values)),
            num_cols=int_or(data.get("numCols"), len(values[0]) if values else 0),
            start_row=int_or(data.get("startRow"), 1),
            start_col=int_or(data.get("startCol"), 1),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "range": self.range_address,
            "values": thaw_grid(self.values),
            "formulas": thaw_grid(self.formulas),
            "numRows": self.num_rows,
            "numCols": self.num_cols,
            "startRow": self.start_row,
            "startCol": self.start_col,
        }


@dataclass(frozen=True)
class SheetContext:
    sheet_name: str = "Sheet1"
    headers: tuple[str, ...] = ()
    current_cell: str = "A1"
    last_row: int = 1
    last_col: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SheetContext":
        if not data:
            return cls()
        headers = data.get("headers")
        if not isinstance(headers, (list, tuple)):
            headers = ()
        return cls(
            sheet_name=text_or_empty(data.get("sheetName")) or "Sheet1",
            headers=tuple(text_or_empty(item) for item in headers),
            current_cell=text_or_empty(data.get("currentCell")) or "A1",
            last_row=int_or(data.get("lastRow"), 1),
            last_col=int_or(data.get("lastCol"), 1),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sheetName": self.sheet_name,
            "headers": list(self.headers),
            "currentCell": self.current_cell,
            "lastRow": self.last_row,
            "lastCol": self.last_col,
        }


@dataclass(frozen=True)
class FixRecord:
    cell: str
    kind: str
    old_value: Any = None
    new_value: Any = None
    reason: str = ""

    @property
    def writes_formula(self) -> bool:
        return self.kind == "formula_error"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FixRecord":
        kind = text_or_empty(data.get("type")).strip()
        return cls(
            cell=text_or_empty(data.get("cell")).strip(),
            kind=FIX_KIND_ALIASES.get(kind, kind),
            old_value=data.get("oldValue"),
            new_value=data.get("newValue"),
            reason=text_or_empty(data.get("reason")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cell": self.cell,
            "type": self.kind,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class FormulaDescriptor:
    formula: str
    explanation: str = ""
    target_cell: str | None = None
    use_autofill: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FormulaDescriptor":
        formula = data.get("formula")
        target = data.get("targetCell")
        return cls(
            formula=formula if isinstance(formula, str) else text_or_empty(formula),
            explanation=text_or_empty(data.get("explanation")),
            target_cell=(str(target).strip() or None) if target is not None else None,
            use_autofill=coerce_flag(data.get("useAutofill", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "formula": self.formula,
            "explanation": self.explanation,
            "targetCell": self.target_cell,
            "useAutofill": self.use_autofill,
        }


def coerce_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    if isinstance(value, (int, float)):
        return value != 0
    return False
