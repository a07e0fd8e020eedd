"""Prompt templates sent to the completion provider.

Caller data is embedded verbatim. Nothing here filters prompt injection from
cell contents or descriptions.
"""

from __future__ import annotations

import json
from typing import Any

from sheet_assist.contracts import json_default
from sheet_assist.models import SheetContext

FIX_TABLE_TEMPLATE = """You are a data analysis expert. Analyze this Google Sheets data and find errors that need to be fixed.

Range: {range_address}
Data:
{data}

Find and fix:
1. Formula errors (#DIV/0!, #REF!, #N/A, #VALUE!, #ERROR!)
2. Wrong data types (text in number columns, numbers in text columns)
3. Duplicate entries
4. Empty cells that should have data
5. Date formatting issues

Return ONLY a JSON array of fixes in this exact format:
[
  {{
    "cell": "A2",
    "type": "formula_error|data_type|duplicate|empty_cell|date_format",
    "oldValue": "current value",
    "newValue": "corrected value",
    "reason": "brief explanation"
  }}
]

Important:
- Use A1 notation for cell references (A1, B2, C3, etc.)
- For formulas, include the = sign in newValue
- If no errors found, return empty array []
- Return ONLY valid JSON, no explanations"""

CREATE_FORMULA_TEMPLATE = """You are a Google Sheets formula expert. Generate a formula based on the user's description.

User wants: {description}

Sheet context:
- Sheet name: {sheet_name}
- Column headers: {headers}
- Current cell: {current_cell}
- Last row with data: {last_row}
- Last column with data: {last_col}

Generate a Google Sheets formula that accomplishes what the user wants.

Return ONLY a JSON object in this exact format:
{{
  "formula": "=SUM(A:A)",
  "explanation": "This formula sums all values in column A",
  "targetCell": "D2",
  "useAutofill": true
}}

Important:
- formula: Must start with = and be a valid Google Sheets formula
- explanation: Brief explanation of what the formula does
- targetCell: Where to place the formula (use A1 notation). If user selected a cell, use that. Otherwise suggest best location.
- useAutofill: true if formula should be copied down to other rows, false otherwise

Examples:
"Calculate sum of column A" → {{"formula": "=SUM(A:A)", "targetCell": "B1", "useAutofill": false}}
"Add 20% tax to column B" → {{"formula": "=B2*0.2", "targetCell": "C2", "useAutofill": true}}
"Show only sales > 1000" → {{"formula": "=FILTER(A:D, C:C>1000)", "targetCell": "F1", "useAutofill": false}}
"Average of last 10 rows" → {{"formula": "=AVERAGE(A2:A11)", "targetCell": "A12", "useAutofill": false}}

Return ONLY valid JSON, no explanations."""


def build_fix_table_prompt(range_address: str, values: list[list[Any]]) -> str:
    data = json.dumps(values, indent=2, default=json_default, ensure_ascii=False)
    return FIX_TABLE_TEMPLATE.format(range_address=range_address, data=data)


def build_create_formula_prompt(description: str, context: SheetContext) -> str:
    return CREATE_FORMULA_TEMPLATE.format(
        description=description,
        sheet_name=context.sheet_name,
        headers=", ".join(context.headers),
        current_cell=context.current_cell,
        last_row=context.last_row,
        last_col=context.last_col,
    )
