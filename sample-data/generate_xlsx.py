#!/usr/bin/env python3
"""
Generates sample-data/sales_sample.xlsx, a small sales sheet with the kinds
of problems Fix Table is meant to catch and a layout Create Formula can work
against.

Run from the repo root:
    python sample-data/generate_xlsx.py

Problems baked in:
  Sheet "Sales"
    - Formula error: E4 divides by an empty cell (#DIV/0! once calculated)
    - Wrong data type: "qty" holds the text "12" (C5) and "N/A" (C7)
    - Duplicate row: row 6 repeats row 3
    - Empty cell: "region" is blank in B8
    - Mixed date formats in "date": ISO, day-first, and spelled out
    - Column E ("total") is empty below E4, ready for an autofilled formula
  Sheet "Notes"
    - Free text only, no table
"""

from pathlib import Path

import openpyxl

OUTPUT = Path(__file__).parent / "sales_sample.xlsx"

HEADERS = ["date", "region", "qty", "price", "total"]

ROWS = [
    # date             region   qty     price   total
    ["2024-01-05",     "North", 10,     2.5,    "=C2*D2"],     # row 2
    ["06/01/2024",     "South", 4,      3.0,    None],         # row 3
    ["2024-01-07",     "East",  7,      1.75,   "=C4/F4"],     # row 4, F4 is empty
    ["January 8, 2024", "West", "12",   2.0,    None],         # row 5, qty as text
    ["06/01/2024",     "South", 4,      3.0,    None],         # row 6, duplicate of row 3
    ["2024-01-09",     "North", "N/A",  2.5,    None],         # row 7
    ["2024-01-10",     None,    3,      4.0,    None],         # row 8, region missing
]


def build_workbook() -> openpyxl.Workbook:
    wb = openpyxl.Workbook()

    ws = wb.active
    ws.title = "Sales"
    ws.append(HEADERS)
    for row in ROWS:
        ws.append(row)

    notes = wb.create_sheet("Notes")
    notes["A1"] = "Figures copied from the regional reports; check against the ledger."
    return wb


def main(output: Path = OUTPUT) -> Path:
    build_workbook().save(output)
    print(f"Created: {output}")
    return output


if __name__ == "__main__":
    main()
