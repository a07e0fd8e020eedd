from __future__ import annotations

from typing import Iterable

from sheet_assist.errors import InvalidFormula
from sheet_assist.models import FixRecord, FormulaDescriptor

FORMULA_PREFIX = "="


def is_applicable_formula(formula: object) -> bool:
    return isinstance(formula, str) and formula.startswith(FORMULA_PREFIX)


def validate_formula(descriptor: FormulaDescriptor) -> FormulaDescriptor:
    """Reject formulas the host could not treat as a formula.

    Only the prefix is checked; a prefixed but meaningless formula is accepted
    and surfaces as a host error once written.
    """
    if not is_applicable_formula(descriptor.formula):
        raise InvalidFormula(formula=descriptor.formula)
    return descriptor


def validate_fixes(fixes: Iterable[FixRecord]) -> list[FixRecord]:
    return list(fixes)
