"""Recover structured answers from free-form completion text.

Completion providers routinely wrap the JSON they were asked for in prose or
markdown fences. ``extract`` tries, in order:

1. the whole text as JSON of the expected container type,
2. every fenced code block (optionally tagged ``json``),
3. every balanced ``{...}`` / ``[...]`` region,

and stops at the first candidate that parses. When nothing parses, fix lists
fail open to ``[]`` while formulas raise ``ParseError``: there is no safe
default formula.
"""

from __future__ import annotations

import enum
import json
import logging
import re
from typing import Any, Iterator

from sheet_assist.errors import ParseError
from sheet_assist.models import FIX_KINDS, FixRecord, FormulaDescriptor

logger = logging.getLogger(__name__)

FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


class Shape(enum.Enum):
    FORMULA = "formula"
    FIXES = "fixes"

    @property
    def container(self) -> type:
        return dict if self is Shape.FORMULA else list

    @property
    def brackets(self) -> tuple[str, str]:
        return ("{", "}") if self is Shape.FORMULA else ("[", "]")


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None


def fenced_blocks(text: str) -> Iterator[str]:
    for match in FENCE_RE.finditer(text):
        yield match.group(1)


def balanced_regions(text: str, opener: str, closer: str) -> Iterator[str]:
    """Yield each balanced ``opener...closer`` substring, left to right.

    One pass with a stack of opener offsets. String literals are only tracked
    inside an open region, so quotes in surrounding prose do not matter, and
    brackets inside them are ignored. An opener that never closes yields
    nothing.
    """
    spans: list[tuple[int, int]] = []
    stack: list[int] = []
    in_string = False
    escape = False
    for index, char in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == opener:
            stack.append(index)
        elif char == closer and stack:
            spans.append((stack.pop(), index + 1))
        elif char == '"' and stack:
            in_string = True
    for start, end in sorted(spans):
        yield text[start:end]


def candidates(raw_text: str, shape: Shape) -> Iterator[tuple[str, str]]:
    yield "direct", raw_text.strip()
    for block in fenced_blocks(raw_text):
        yield "fenced", block
    opener, closer = shape.brackets
    for region in balanced_regions(raw_text, opener, closer):
        yield "balanced", region


def extract_payload(raw_text: str, shape: Shape) -> Any:
    """Return the first parsed candidate matching ``shape`` or ``None``."""
    if not isinstance(raw_text, str) or not raw_text.strip():
        return None
    for strategy, candidate in candidates(raw_text, shape):
        parsed = _loads(candidate)
        if isinstance(parsed, shape.container):
            logger.debug("Extracted %s payload using %s strategy", shape.value, strategy)
            return parsed
    return None


def coerce_fixes(items: list[Any]) -> list[FixRecord]:
    fixes: list[FixRecord] = []
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning("Dropping fix #%d: expected an object, got %s", position, type(item).__name__)
            continue
        if not isinstance(item.get("cell"), str) or not item["cell"].strip():
            logger.warning("Dropping fix #%d: missing cell address", position)
            continue
        record = FixRecord.from_dict(item)
        if record.kind not in FIX_KINDS:
            logger.warning("Dropping fix for %s: unknown type %r", record.cell, record.kind)
            continue
        fixes.append(record)
    return fixes


def extract_fixes(raw_text: str) -> list[FixRecord]:
    payload = extract_payload(raw_text, Shape.FIXES)
    if payload is None:
        logger.info("No fix list found in completion; treating as no fixes")
        return []
    return coerce_fixes(payload)


def extract_formula(raw_text: str) -> FormulaDescriptor:
    payload = extract_payload(raw_text, Shape.FORMULA)
    if payload is None:
        raise ParseError("Could not parse AI response", raw_text=raw_text if isinstance(raw_text, str) else "")
    return FormulaDescriptor.from_dict(payload)


def extract(raw_text: str, shape: Shape) -> FormulaDescriptor | list[FixRecord]:
    if shape is Shape.FORMULA:
        return extract_formula(raw_text)
    return extract_fixes(raw_text)
