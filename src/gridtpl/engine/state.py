"""Normalized template store: immutable snapshots with copy-on-write maps."""

from __future__ import annotations

import re
import uuid
from datetime import date
from typing import Iterable, Union

from pydantic import BaseModel, ConfigDict, Field

from gridtpl.contracts.template import (
    Column,
    DbCell,
    ExtraField,
    FormulaCell,
    ReportMeta,
    Row,
    Selection,
    TemplateMeta,
    TextCell,
    Variant,
)

AnyCell = Union[TextCell, FormulaCell, DbCell]

DEFAULT_COLUMN_WIDTH = 150
COLUMN_ID_PREFIX = "C__"
ROW_ID_PREFIX = "R__"

_SUFFIX_RE = re.compile(r"(\d+)$")


class TemplateState(BaseModel):
    """One immutable snapshot of a template document plus its editor state.

    Maps and tuples are shared between snapshots and are never modified in
    place: a mutation copies the map it changes and builds a new snapshot
    with ``model_copy(update=...)``.
    """

    model_config = ConfigDict(frozen=True)

    template_meta: TemplateMeta = Field(default_factory=TemplateMeta)
    report_meta: ReportMeta = Field(default_factory=ReportMeta)
    columns: tuple[Column, ...] = ()
    rows: dict[str, Row] = Field(default_factory=dict)
    cells: dict[str, AnyCell] = Field(default_factory=dict)
    row_order: tuple[str, ...] = ()
    row_heights: dict[str, int] = Field(default_factory=dict)
    merged: dict[str, str] = Field(default_factory=dict)  # merged cell id -> owning row id
    variants: tuple[Variant, ...] = ()
    selected_cell: Selection | None = None
    formula_mode: bool = False
    saving: bool = False
    template_saved: bool = False

    # -- lookups ---------------------------------------------------------
    def row_at(self, index: int) -> Row | None:
        if 0 <= index < len(self.row_order):
            return self.rows.get(self.row_order[index])
        return None

    def row_index(self, row_id: str) -> int | None:
        try:
            return self.row_order.index(row_id)
        except ValueError:
            return None

    def column_index(self, column_id: str) -> int | None:
        for idx, col in enumerate(self.columns):
            if col.id == column_id:
                return idx
        return None

    def row_cells(self, row_id: str) -> list[AnyCell]:
        """Cells of a row in column order. Unknown rows have no cells."""
        row = self.rows.get(row_id)
        if row is None:
            return []
        return [self.cells[cid] for cid in row.cell_ids if cid in self.cells]

    def cell_at(self, row_id: str, column_index: int) -> AnyCell | None:
        row = self.rows.get(row_id)
        if row is None or not 0 <= column_index < len(row.cell_ids):
            return None
        return self.cells.get(row.cell_ids[column_index])

    def iter_rows(self) -> Iterable[tuple[int, Row]]:
        for idx, row_id in enumerate(self.row_order):
            yield idx, self.rows[row_id]


def new_cell_id() -> str:
    return f"cl_{uuid.uuid4().hex[:12]}"


def default_cell() -> TextCell:
    return TextCell(id=new_cell_id())


def next_sequential_id(prefix: str, existing: Iterable[str]) -> str:
    """Return ``<prefix><n>`` with n one past the largest numeric suffix in use."""
    highest = 0
    taken = set()
    for ident in existing:
        taken.add(ident)
        m = _SUFFIX_RE.search(ident)
        if m:
            highest = max(highest, int(m.group(1)))
    candidate = f"{prefix}{highest + 1}"
    while candidate in taken:
        highest += 1
        candidate = f"{prefix}{highest + 1}"
    return candidate


def initial_state() -> TemplateState:
    """Empty template with today's report date, as a fresh editor starts."""
    return TemplateState(
        template_meta=TemplateMeta(),
        report_meta=ReportMeta(
            extras=[ExtraField(name="Report Date", value=date.today().isoformat())],
        ),
    )


# ---------------------------------------------------------------------------
# Derived selectors
# ---------------------------------------------------------------------------
def selected_row(state: TemplateState) -> Row | None:
    sel = state.selected_cell
    if sel is None:
        return None
    return state.rows.get(sel.row_id)


def selected_cell_data(state: TemplateState) -> AnyCell | None:
    """The selected cell, or None when the selection is empty or stale."""
    row = selected_row(state)
    if row is None or not state.selected_cell.cell_id:
        return None
    if state.selected_cell.cell_id not in row.cell_ids:
        return None
    return state.cells.get(state.selected_cell.cell_id)


def selected_column(state: TemplateState) -> Column | None:
    row = selected_row(state)
    if row is None:
        return None
    try:
        idx = row.cell_ids.index(state.selected_cell.cell_id)
    except ValueError:
        return None
    return state.columns[idx] if idx < len(state.columns) else None


def table_names(state: TemplateState) -> list[str]:
    """Data tables referenced by DB cells and dynamic rows, in first-seen order."""
    tables: dict[str, None] = {}
    for _, row in state.iter_rows():
        for cell in state.row_cells(row.id):
            if isinstance(cell, DbCell) and cell.source.table:
                tables.setdefault(cell.source.table)
        if row.dynamic_config is not None and row.dynamic_config.table:
            tables.setdefault(row.dynamic_config.table)
    return list(tables)


def dynamic_row_ids(state: TemplateState) -> list[str]:
    return [row.id for _, row in state.iter_rows() if row.is_dynamic]


def template_columns(state: TemplateState) -> list[dict[str, str]]:
    return [{"id": col.id, "name": col.name} for col in state.columns]


def cell_display(cell: AnyCell | None) -> str:
    """Short human-readable label for a cell, as the editor canvas shows it."""
    if cell is None:
        return ""
    if isinstance(cell, TextCell):
        return cell.value
    if isinstance(cell, FormulaCell):
        return f"= {cell.expression}" if cell.expression else "= formula"
    parts = [p for p in (cell.source.table, cell.source.column) if p]
    return f"{cell.type}({'.'.join(parts)})"


def find_cell(state: TemplateState, cell_id: str) -> tuple[str, int] | None:
    """Locate the owning row id and column index of ``cell_id``."""
    for _, row in state.iter_rows():
        if cell_id in row.cell_ids:
            return row.id, row.cell_ids.index(cell_id)
    return None
