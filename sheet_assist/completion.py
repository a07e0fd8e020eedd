from __future__ import annotations

import logging
from typing import Any

from sheet_assist.config import CREATE_FORMULA_MAX_TOKENS, FIX_TABLE_MAX_TOKENS, Settings
from sheet_assist.extraction import extract_fixes, extract_formula
from sheet_assist.models import FixRecord, FormulaDescriptor, SheetContext
from sheet_assist.prompts import build_create_formula_prompt, build_fix_table_prompt
from sheet_assist.provider import CompletionProvider
from sheet_assist.validator import validate_fixes, validate_formula

logger = logging.getLogger(__name__)


class CompletionService:
    """Turns spreadsheet requests into validated provider answers."""

    def __init__(self, settings: Settings | None = None, provider: CompletionProvider | None = None) -> None:
        self.settings = settings or Settings.from_env()
        self.provider = provider or CompletionProvider(self.settings)

    def request_fixes(self, range_address: str, values: list[list[Any]]) -> list[FixRecord]:
        prompt = build_fix_table_prompt(range_address, values)
        raw_text = self.provider.complete(prompt, max_tokens=FIX_TABLE_MAX_TOKENS)
        fixes = validate_fixes(extract_fixes(raw_text))
        logger.info("Provider proposed %d fixes for %s", len(fixes), range_address or "[unnamed range]")
        return fixes

    def request_formula(self, description: str, context: SheetContext) -> FormulaDescriptor:
        prompt = build_create_formula_prompt(description, context)
        raw_text = self.provider.complete(prompt, max_tokens=CREATE_FORMULA_MAX_TOKENS)
        descriptor = validate_formula(extract_formula(raw_text))
        logger.info("Provider proposed %s for %s", descriptor.formula, descriptor.target_cell or context.current_cell)
        return descriptor
