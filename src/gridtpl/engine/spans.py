"""Span resolver: grid positions covered by merged cells.

Only anchors (cells whose colspan or rowspan exceeds 1) are visited.
``TemplateState.merged`` maps each anchor to its owning row, so the cost of
resolving follows the number of merged cells rather than the size of the
grid. A row span stops silently at the end of the row list or at the first
DYNAMIC row.
"""

from __future__ import annotations

from typing import Mapping

from gridtpl.contracts.template import CellRender, Row
from gridtpl.engine.state import AnyCell, TemplateState

HiddenSet = frozenset[tuple[str, str]]

# (row position, column index, cell id)
Anchor = tuple[int, int, str]


def index_merged(rows: Mapping[str, Row], cells: Mapping[str, AnyCell]) -> dict[str, str]:
    """Every cell with a non-trivial span, mapped to the row that owns it."""
    return {
        cell_id: row.id
        for row in rows.values()
        if not row.is_dynamic
        for cell_id in row.cell_ids
        if cell_id in cells and cells[cell_id].render.is_merged
    }


def find_anchors(state: TemplateState) -> list[Anchor]:
    """Merged cells in grid order, located through their owning rows."""
    if not state.merged:
        return []
    positions = {row_id: pos for pos, row_id in enumerate(state.row_order)}
    anchors: list[Anchor] = []
    for cell_id, row_id in state.merged.items():
        row = state.rows.get(row_id)
        pos = positions.get(row_id)
        if row is None or pos is None or row.is_dynamic or cell_id not in row.cell_ids:
            continue
        anchors.append((pos, row.cell_ids.index(cell_id), cell_id))
    anchors.sort()
    return anchors


def _covered_rows(state: TemplateState, pos: int, rowspan: int) -> list[str]:
    """Row ids below ``pos`` covered by a row span, truncated at the list end or a DYNAMIC row."""
    covered: list[str] = []
    for k in range(1, rowspan):
        if pos + k >= len(state.row_order):
            break
        below = state.rows[state.row_order[pos + k]]
        if below.is_dynamic:
            break
        covered.append(below.id)
    return covered


def _cover(state: TemplateState, anchors: list[Anchor]) -> HiddenSet:
    hidden: set[tuple[str, str]] = set()
    for pos, col, cell_id in anchors:
        cell = state.cells.get(cell_id)
        if cell is None:
            continue
        render = cell.render
        row = state.rows[state.row_order[pos]]
        for c in range(col + 1, min(col + render.colspan, len(row.cell_ids))):
            hidden.add((row.id, row.cell_ids[c]))
        for below_id in _covered_rows(state, pos, render.rowspan):
            below = state.rows[below_id]
            for c in range(col, min(col + render.colspan, len(below.cell_ids))):
                hidden.add((below.id, below.cell_ids[c]))
    return frozenset(hidden)


def hidden_cells(state: TemplateState) -> HiddenSet:
    """All ``(row_id, cell_id)`` pairs subsumed by a preceding cell's span."""
    return _cover(state, find_anchors(state))


def effective_span(state: TemplateState, row_id: str, cell_id: str) -> tuple[int, int]:
    """The ``(colspan, rowspan)`` a cell actually covers after truncation."""
    row = state.rows.get(row_id)
    cell = state.cells.get(cell_id)
    pos = state.row_index(row_id)
    if row is None or cell is None or pos is None or row.is_dynamic:
        return 1, 1
    try:
        col = row.cell_ids.index(cell_id)
    except ValueError:
        return 1, 1
    colspan = max(1, min(cell.render.colspan, len(row.cell_ids) - col))
    rowspan = 1 + len(_covered_rows(state, pos, cell.render.rowspan))
    return colspan, rowspan


class SpanResolver:
    """Memoizing resolver, one per session.

    Anchor positions are cached until rows, row order or the merged index
    change; the hidden set is cached until an anchor's render hints change.
    Plain cell edits therefore reuse both caches.
    """

    def __init__(self) -> None:
        self._anchor_key: tuple[object, ...] | None = None
        self._anchors: list[Anchor] = []
        self._renders: list[CellRender] | None = None
        self._hidden: HiddenSet = frozenset()

    def _anchors_for(self, state: TemplateState) -> list[Anchor]:
        key = (state.rows, state.row_order, state.merged)
        if self._anchor_key is None or any(a is not b for a, b in zip(self._anchor_key, key)):
            self._anchors = find_anchors(state)
            self._anchor_key = key
            self._renders = None
        return self._anchors

    def resolve(self, state: TemplateState) -> HiddenSet:
        anchors = self._anchors_for(state)
        renders = [
            state.cells[cid].render if cid in state.cells else CellRender()
            for _, _, cid in anchors
        ]
        if renders != self._renders:
            self._hidden = _cover(state, anchors)
            self._renders = renders
        return self._hidden

    def is_hidden(self, state: TemplateState, row_id: str, cell_id: str) -> bool:
        return (row_id, cell_id) in self.resolve(state)
