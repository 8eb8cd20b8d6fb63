"""Formula reference tracking.

A formula refers to another grid position with a ``cell_<rowId>_<columnId>``
token. Row and column ids are stable across edits, unlike cell ids, so the
token survives reorders. Ids are free strings (``total-row`` is as valid as
``R__3``), so tokens are never split on a character class: patterns are
built from the ids that exist in the template, longest id first, and a token
ends where no word character follows. Expressions are never parsed or
evaluated.
"""

from __future__ import annotations

import re
from re import Pattern
from typing import Iterable, Optional

from gridtpl.contracts.responses import ReferenceLocation
from gridtpl.contracts.template import FormulaCell
from gridtpl.engine.state import AnyCell, TemplateState

TOKEN_PREFIX = "cell_"
_START = r"(?<!\w)"
_END = r"(?!\w)"
# anything token-shaped, used only to report leftovers
_LOOSE_TOKEN_RE = re.compile(_START + re.escape(TOKEN_PREFIX) + r"[\w\-]+")


def reference_token(row_id: str, column_id: str) -> str:
    return f"{TOKEN_PREFIX}{row_id}_{column_id}"


def _alternation(ids: Iterable[str]) -> str:
    ordered = sorted({i for i in ids if i}, key=len, reverse=True)
    return "|".join(re.escape(i) for i in ordered)


def row_pattern(state: TemplateState, row_id: str) -> Optional[Pattern[str]]:
    """Tokens naming any cell of ``row_id``; None when there are no columns."""
    columns = _alternation(col.id for col in state.columns)
    if not columns or not row_id:
        return None
    return re.compile(f"{_START}{re.escape(reference_token(row_id, ''))}(?:{columns}){_END}")


def column_pattern(state: TemplateState, column_id: str) -> Optional[Pattern[str]]:
    """Tokens naming any cell of ``column_id``; None when there are no rows."""
    rows = _alternation(state.rows)
    if not rows or not column_id:
        return None
    return re.compile(
        f"{_START}{re.escape(TOKEN_PREFIX)}(?:{rows})_{re.escape(column_id)}{_END}"
    )


def known_pattern(state: TemplateState) -> Optional[Pattern[str]]:
    """Tokens naming any existing row/column pair."""
    rows = _alternation(state.rows)
    columns = _alternation(col.id for col in state.columns)
    if not rows or not columns:
        return None
    return re.compile(f"{_START}{re.escape(TOKEN_PREFIX)}(?:{rows})_(?:{columns}){_END}")


def _mentions(expression: object, pattern: Optional[Pattern[str]]) -> bool:
    if pattern is None or not isinstance(expression, str) or not expression:
        return False
    return pattern.search(expression) is not None


def _scan(state: TemplateState, pattern: Optional[Pattern[str]]) -> list[ReferenceLocation]:
    locations: list[ReferenceLocation] = []
    if pattern is None:
        return locations
    for row_idx, row in state.iter_rows():
        for col_idx, cell_id in enumerate(row.cell_ids):
            cell = state.cells.get(cell_id)
            if isinstance(cell, FormulaCell) and _mentions(cell.expression, pattern):
                locations.append(ReferenceLocation(
                    row_id=row.id, cell_id=cell_id,
                    row_index=row_idx, column_index=col_idx,
                ))
    return locations


def find_row_references(state: TemplateState, row_id: str) -> list[ReferenceLocation]:
    """Formula cells whose expression references any cell of ``row_id``."""
    return _scan(state, row_pattern(state, row_id))


def find_column_references(state: TemplateState, column_id: str) -> list[ReferenceLocation]:
    """Formula cells whose expression references any cell of ``column_id``."""
    return _scan(state, column_pattern(state, column_id))


def strip_tokens(expression: str, pattern: Pattern[str]) -> str:
    """Remove matching tokens; the rest of the expression is left untouched."""
    return pattern.sub("", expression)


def _strip(state: TemplateState, pattern: Optional[Pattern[str]]) -> dict[str, AnyCell]:
    cells = state.cells
    if pattern is None:
        return cells
    updated: dict[str, AnyCell] = {
        cell_id: cell.model_copy(update={"expression": strip_tokens(cell.expression, pattern)})
        for cell_id, cell in cells.items()
        if isinstance(cell, FormulaCell) and _mentions(cell.expression, pattern)
    }
    if not updated:
        return cells
    return {**cells, **updated}


def strip_row_references(state: TemplateState, row_id: str) -> dict[str, AnyCell]:
    """Cell map with every token referencing ``row_id`` removed.

    Returns ``state.cells`` itself when nothing referenced the row.
    """
    return _strip(state, row_pattern(state, row_id))


def strip_column_references(state: TemplateState, column_id: str) -> dict[str, AnyCell]:
    return _strip(state, column_pattern(state, column_id))


def is_known_token(state: TemplateState, token: str) -> bool:
    """Whether ``token`` names a row/column pair that exists."""
    pattern = known_pattern(state)
    return pattern is not None and pattern.fullmatch(token) is not None


def dangling_references(state: TemplateState) -> list[tuple[ReferenceLocation, str]]:
    """Token-shaped text left after every known reference is taken out."""
    known = known_pattern(state)
    found: list[tuple[ReferenceLocation, str]] = []
    for row_idx, row in state.iter_rows():
        for col_idx, cell_id in enumerate(row.cell_ids):
            cell = state.cells.get(cell_id)
            if not isinstance(cell, FormulaCell) or not isinstance(cell.expression, str):
                continue
            rest = known.sub(" ", cell.expression) if known is not None else cell.expression
            for tok in _LOOSE_TOKEN_RE.findall(rest):
                loc = ReferenceLocation(
                    row_id=row.id, cell_id=cell_id,
                    row_index=row_idx, column_index=col_idx,
                )
                found.append((loc, tok))
    return found
