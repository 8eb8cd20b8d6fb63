"""Mutation engine: every change to a ``TemplateState`` goes through here.

Each mutation is a pure function ``(state, **payload) -> state`` registered in
``MUTATIONS`` under its kind name. A mutation that finds nothing to do (unknown
id, index out of range, patch equal to the current value) returns the very
same state object; callers rely on identity to detect no-ops.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable

from pydantic import AliasChoices, BaseModel

from gridtpl.contracts.template import (
    DB_CELL_TYPES,
    CellFormat,
    CellSource,
    Column,
    ColumnFormat,
    DbCell,
    DynamicConfig,
    FormulaCell,
    Row,
    RowDoc,
    Selection,
    TextCell,
    Variant,
    parse_cell,
)
from gridtpl.engine import projector
from gridtpl.engine.references import strip_column_references, strip_row_references
from gridtpl.engine.state import (
    COLUMN_ID_PREFIX,
    DEFAULT_COLUMN_WIDTH,
    ROW_ID_PREFIX,
    AnyCell,
    TemplateState,
    default_cell,
    find_cell,
    initial_state,
    new_cell_id,
    next_sequential_id,
)

Mutation = Callable[..., TemplateState]

_CELL_CLASSES: dict[str, type[BaseModel]] = {
    "TEXT": TextCell,
    "FORMULA": FormulaCell,
    **{t: DbCell for t in DB_CELL_TYPES},
}

# Keys callers may not patch directly; the engine owns them.
_ENGINE_OWNED = frozenset({"id", "cell_ids", "cellIds"})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _field_name(model_cls: type[BaseModel], key: str) -> str | None:
    fields = model_cls.model_fields
    if key in fields:
        return key
    for name, info in fields.items():
        if key == info.alias:
            return name
        va = info.validation_alias
        if va == key or (isinstance(va, AliasChoices) and key in va.choices):
            return name
    return None


def _normalize(model_cls: type[BaseModel], patch: dict[str, Any]) -> dict[str, Any]:
    """Map patch keys (either spelling) to field names; unknown and engine-owned keys are dropped."""
    update: dict[str, Any] = {}
    for key, value in patch.items():
        if key in _ENGINE_OWNED:
            continue
        name = _field_name(model_cls, key)
        if name is not None and name not in _ENGINE_OWNED:
            update[name] = value
    return update


def _merge(model: BaseModel, patch: dict[str, Any] | None) -> BaseModel:
    """Shallow-merge ``patch`` into a frozen model, re-validating the result.

    Returns ``model`` itself when the patch changes nothing.
    """
    if not patch:
        return model
    update = _normalize(type(model), patch)
    if not update:
        return model
    merged = type(model).model_validate({**model.model_dump(), **update})
    return model if merged == model else merged


def _with_merged(
    merged: dict[str, str], cell_id: str, cell: AnyCell | None, row_id: str | None,
) -> dict[str, str]:
    """Merged-cell index after ``cell_id`` of ``row_id`` became ``cell`` (None when deleted)."""
    if cell is not None and cell.render.is_merged and row_id is not None:
        return merged if merged.get(cell_id) == row_id else {**merged, cell_id: row_id}
    return _without_merged(merged, (cell_id,))


def _without_merged(merged: dict[str, str], cell_ids: Iterable[str]) -> dict[str, str]:
    drop = set(cell_ids)
    if not merged or merged.keys().isdisjoint(drop):
        return merged
    return {k: v for k, v in merged.items() if k not in drop}


def _clear_selection(state: TemplateState, row_ids: set[str], cell_ids: set[str]) -> Selection | None:
    sel = state.selected_cell
    if sel is None:
        return None
    if sel.row_id in row_ids or (sel.cell_id and sel.cell_id in cell_ids):
        return None
    return sel


def _fresh_cells(count: int) -> list[AnyCell]:
    return [default_cell() for _ in range(count)]


# ---------------------------------------------------------------------------
# Columns
# ---------------------------------------------------------------------------
def add_column(state: TemplateState) -> TemplateState:
    """Append a column and one default TEXT cell to every non-DYNAMIC row."""
    column = Column(
        id=next_sequential_id(COLUMN_ID_PREFIX, (c.id for c in state.columns)),
        name=f"Column {len(state.columns) + 1}",
        format=ColumnFormat(width=DEFAULT_COLUMN_WIDTH),
    )
    rows = dict(state.rows)
    cells = dict(state.cells)
    for row_id, row in state.rows.items():
        if row.is_dynamic:
            continue
        cell = default_cell()
        cells[cell.id] = cell
        rows[row_id] = row.model_copy(update={"cell_ids": row.cell_ids + (cell.id,)})
    return state.model_copy(update={
        "columns": state.columns + (column,),
        "rows": rows,
        "cells": cells,
    })


def remove_column(
    state: TemplateState,
    column_id: str | None = None,
    index: int | None = None,
) -> TemplateState:
    """Remove a column with its cells; the column's own position wins over ``index``."""
    idx = state.column_index(column_id) if column_id else None
    if idx is None and index is not None and 0 <= index < len(state.columns):
        idx = index
    if idx is None:
        return state
    removed_column = state.columns[idx]

    cells = dict(strip_column_references(state, removed_column.id))
    rows = dict(state.rows)
    removed: set[str] = set()
    for row_id, row in state.rows.items():
        if row.is_dynamic or idx >= len(row.cell_ids):
            continue
        cell_id = row.cell_ids[idx]
        removed.add(cell_id)
        cells.pop(cell_id, None)
        rows[row_id] = row.model_copy(
            update={"cell_ids": row.cell_ids[:idx] + row.cell_ids[idx + 1:]}
        )
    return state.model_copy(update={
        "columns": state.columns[:idx] + state.columns[idx + 1:],
        "rows": rows,
        "cells": cells,
        "merged": _without_merged(state.merged, removed),
        "selected_cell": _clear_selection(state, set(), removed),
    })


def update_column(state: TemplateState, index: int, patch: dict[str, Any]) -> TemplateState:
    if not 0 <= index < len(state.columns):
        return state
    column = state.columns[index]
    updated = _merge(column, patch)
    if updated is column:
        return state
    columns = list(state.columns)
    columns[index] = updated
    return state.model_copy(update={"columns": tuple(columns)})


def update_column_format(state: TemplateState, index: int, patch: dict[str, Any]) -> TemplateState:
    if not 0 <= index < len(state.columns):
        return state
    column = state.columns[index]
    fmt = _merge(column.format, patch)
    if fmt is column.format:
        return state
    columns = list(state.columns)
    columns[index] = column.model_copy(update={"format": fmt})
    return state.model_copy(update={"columns": tuple(columns)})


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------
def add_row(
    state: TemplateState,
    row: dict[str, Any] | None = None,
    insert_at: int | None = None,
) -> TemplateState:
    """Insert a row at ``insert_at`` (clamped) or append it.

    Non-DYNAMIC rows get one cell per column: the supplied ``cells`` padded
    with default TEXT cells or truncated to the column count. DYNAMIC rows
    never own cells. A row whose id already exists is not added.
    """
    doc = RowDoc.model_validate(row or {})
    row_id = doc.id or next_sequential_id(ROW_ID_PREFIX, state.rows)
    if row_id in state.rows:
        return state

    cells = dict(state.cells)
    merged = state.merged
    cell_ids: tuple[str, ...] = ()
    dynamic_config = doc.dynamic_config
    if doc.row_type == "DYNAMIC":
        dynamic_config = dynamic_config or DynamicConfig()
    else:
        dynamic_config = None
        supplied = list(doc.cells or [])[:len(state.columns)]
        supplied += _fresh_cells(len(state.columns) - len(supplied))
        ids: list[str] = []
        for cell in supplied:
            if not cell.id or cell.id in cells:
                cell = cell.model_copy(update={"id": new_cell_id()})
            cells[cell.id] = cell
            merged = _with_merged(merged, cell.id, cell, row_id)
            ids.append(cell.id)
        cell_ids = tuple(ids)

    new_row = Row(
        id=row_id,
        row_type=doc.row_type,
        cell_ids=cell_ids,
        dynamic_config=dynamic_config,
        height=doc.height,
    )
    pos = len(state.row_order) if insert_at is None else max(0, min(insert_at, len(state.row_order)))
    return state.model_copy(update={
        "rows": {**state.rows, row_id: new_row},
        "cells": cells,
        "row_order": state.row_order[:pos] + (row_id,) + state.row_order[pos:],
        "merged": merged,
    })


def remove_row(state: TemplateState, row_id: str) -> TemplateState:
    """Remove a row, its cells and its cached height."""
    row = state.rows.get(row_id)
    if row is None:
        return state
    cells = dict(strip_row_references(state, row_id))
    for cell_id in row.cell_ids:
        cells.pop(cell_id, None)
    rows = dict(state.rows)
    del rows[row_id]
    heights = state.row_heights
    if row_id in heights:
        heights = {k: v for k, v in heights.items() if k != row_id}
    return state.model_copy(update={
        "rows": rows,
        "cells": cells,
        "row_order": tuple(r for r in state.row_order if r != row_id),
        "row_heights": heights,
        "merged": _without_merged(state.merged, row.cell_ids),
        "selected_cell": _clear_selection(state, {row_id}, set(row.cell_ids)),
    })


def update_row(state: TemplateState, row_id: str, patch: dict[str, Any]) -> TemplateState:
    """Shallow-merge ``rowType``, ``height`` or ``dynamicConfig`` into a row.

    Switching a row to DYNAMIC deletes its cells; switching it away from
    DYNAMIC gives it one default cell per column.
    """
    row = state.rows.get(row_id)
    if row is None:
        return state
    updated = _merge(row, patch)
    if updated is row:
        return state

    cells = state.cells
    merged = state.merged
    selection = state.selected_cell
    if updated.is_dynamic and not row.is_dynamic:
        dropped = set(row.cell_ids)
        cells = {k: v for k, v in cells.items() if k not in dropped}
        merged = _without_merged(merged, row.cell_ids)
        selection = _clear_selection(state, {row_id}, set(row.cell_ids))
        updated = updated.model_copy(update={
            "cell_ids": (),
            "dynamic_config": updated.dynamic_config or DynamicConfig(),
        })
    elif row.is_dynamic and not updated.is_dynamic:
        fresh = _fresh_cells(len(state.columns))
        cells = {**cells, **{c.id: c for c in fresh}}
        updated = updated.model_copy(update={
            "cell_ids": tuple(c.id for c in fresh),
            "dynamic_config": None,
        })
    return state.model_copy(update={
        "rows": {**state.rows, row_id: updated},
        "cells": cells,
        "merged": merged,
        "selected_cell": selection,
    })


def reorder_row(state: TemplateState, from_index: int, to_index: int) -> TemplateState:
    n = len(state.row_order)
    if not (0 <= from_index < n and 0 <= to_index < n) or from_index == to_index:
        return state
    order = list(state.row_order)
    order.insert(to_index, order.pop(from_index))
    return state.model_copy(update={"row_order": tuple(order)})


def set_row_height(state: TemplateState, row_id: str, height: int | None = None) -> TemplateState:
    """Cache a measured row height; ``None`` clears it."""
    if row_id not in state.rows or state.row_heights.get(row_id) == height:
        return state
    heights = {k: v for k, v in state.row_heights.items() if k != row_id}
    if height is not None:
        heights[row_id] = height
    return state.model_copy(update={"row_heights": heights})


def update_dynamic_config(state: TemplateState, row_id: str, patch: dict[str, Any]) -> TemplateState:
    row = state.rows.get(row_id)
    if row is None or not row.is_dynamic:
        return state
    base = row.dynamic_config or DynamicConfig()
    config = _merge(base, patch)
    if config is base:
        return state
    return state.model_copy(update={
        "rows": {**state.rows, row_id: row.model_copy(update={"dynamic_config": config})},
    })


# ---------------------------------------------------------------------------
# Cells
# ---------------------------------------------------------------------------
def _replace_cell(state: TemplateState, cell_id: str, cell: AnyCell) -> TemplateState:
    row_id = state.merged.get(cell_id)
    if row_id is None and cell.render.is_merged:
        owner = find_cell(state, cell_id)
        row_id = owner[0] if owner else None
    return state.model_copy(update={
        "cells": {**state.cells, cell_id: cell},
        "merged": _with_merged(state.merged, cell_id, cell, row_id),
    })


def update_cell(state: TemplateState, cell_id: str, patch: dict[str, Any]) -> TemplateState:
    """Shallow-merge into a cell. A new ``type`` re-validates it as that kind."""
    cell = state.cells.get(cell_id)
    if cell is None or not patch:
        return state
    new_type = patch.get("type", cell.type)
    if _CELL_CLASSES.get(new_type) is type(cell):
        updated = _merge(cell, patch)
    else:
        target_cls = _CELL_CLASSES.get(new_type, type(cell))
        updated = parse_cell({
            **cell.model_dump(),
            **_normalize(target_cls, patch),
            "type": new_type,
            "id": cell_id,
        })
    if updated is cell or updated == cell:
        return state
    return _replace_cell(state, cell_id, updated)


def update_cell_render(state: TemplateState, cell_id: str, patch: dict[str, Any]) -> TemplateState:
    cell = state.cells.get(cell_id)
    if cell is None:
        return state
    render = _merge(cell.render, patch)
    if render is cell.render:
        return state
    return _replace_cell(state, cell_id, cell.model_copy(update={"render": render}))


def update_cell_format(state: TemplateState, cell_id: str, patch: dict[str, Any]) -> TemplateState:
    cell = state.cells.get(cell_id)
    if cell is None:
        return state
    base = cell.format or CellFormat()
    fmt = _merge(base, patch)
    if fmt is base:
        return state
    return _replace_cell(state, cell_id, cell.model_copy(update={"format": fmt}))


def update_cell_source(state: TemplateState, cell_id: str, patch: dict[str, Any]) -> TemplateState:
    """Shallow-merge into a DB cell's source binding; other kinds are left alone."""
    cell = state.cells.get(cell_id)
    if not isinstance(cell, DbCell):
        return state
    source = _merge(cell.source or CellSource(), patch)
    if source is cell.source:
        return state
    return _replace_cell(state, cell_id, cell.model_copy(update={"source": source}))


# ---------------------------------------------------------------------------
# Template, metadata, variants
# ---------------------------------------------------------------------------
def set_template(state: TemplateState, document: dict[str, Any]) -> TemplateState:
    return projector.from_document(document)


def reset_template(state: TemplateState) -> TemplateState:
    return initial_state()


def update_template_meta(state: TemplateState, patch: dict[str, Any]) -> TemplateState:
    meta = _merge(state.template_meta, patch)
    if meta is state.template_meta:
        return state
    return state.model_copy(update={"template_meta": meta})


def update_report_meta(state: TemplateState, patch: dict[str, Any]) -> TemplateState:
    meta = _merge(state.report_meta, patch)
    if meta is state.report_meta:
        return state
    return state.model_copy(update={"report_meta": meta})


def set_variants(state: TemplateState, variants: list[dict[str, Any]]) -> TemplateState:
    parsed = tuple(Variant.model_validate(v) for v in variants)
    if parsed == state.variants:
        return state
    return state.model_copy(update={"variants": parsed})


def add_variant(state: TemplateState, variant: dict[str, Any]) -> TemplateState:
    return state.model_copy(update={"variants": state.variants + (Variant.model_validate(variant),)})


def update_variant(state: TemplateState, index: int, patch: dict[str, Any]) -> TemplateState:
    if not 0 <= index < len(state.variants):
        return state
    current = state.variants[index]
    updated = _merge(current, patch)
    if updated is current:
        return state
    variants = list(state.variants)
    variants[index] = updated
    return state.model_copy(update={"variants": tuple(variants)})


def remove_variant(state: TemplateState, index: int) -> TemplateState:
    if not 0 <= index < len(state.variants):
        return state
    return state.model_copy(update={"variants": state.variants[:index] + state.variants[index + 1:]})


# ---------------------------------------------------------------------------
# UI state
# ---------------------------------------------------------------------------
def select_cell(state: TemplateState, row_id: str | None = None, cell_id: str | None = None) -> TemplateState:
    selection = Selection(row_id=row_id, cell_id=cell_id or "") if row_id else None
    if selection == state.selected_cell:
        return state
    return state.model_copy(update={"selected_cell": selection})


def _flag_setter(field: str) -> Mutation:
    def setter(state: TemplateState, enabled: bool) -> TemplateState:
        if getattr(state, field) == bool(enabled):
            return state
        return state.model_copy(update={field: bool(enabled)})

    setter.__name__ = f"set_{field}"
    return setter


MUTATIONS: dict[str, Mutation] = {
    "column.add": add_column,
    "column.remove": remove_column,
    "column.update": update_column,
    "column.update_format": update_column_format,
    "row.add": add_row,
    "row.remove": remove_row,
    "row.update": update_row,
    "row.reorder": reorder_row,
    "row.set_height": set_row_height,
    "row.update_dynamic_config": update_dynamic_config,
    "cell.update": update_cell,
    "cell.update_render": update_cell_render,
    "cell.update_format": update_cell_format,
    "cell.update_source": update_cell_source,
    "template.set": set_template,
    "template.reset": reset_template,
    "template.update_meta": update_template_meta,
    "report.update_meta": update_report_meta,
    "variant.set": set_variants,
    "variant.add": add_variant,
    "variant.update": update_variant,
    "variant.remove": remove_variant,
    "ui.select_cell": select_cell,
    "ui.formula_mode": _flag_setter("formula_mode"),
    "ui.saving": _flag_setter("saving"),
    "ui.saved": _flag_setter("template_saved"),
}


def apply_mutation(state: TemplateState, kind: str, **payload: Any) -> TemplateState:
    """Run the mutation registered under ``kind``. Unknown kinds raise ValueError."""
    fn = MUTATIONS.get(kind)
    if fn is None:
        raise ValueError(f"Unknown mutation kind: {kind}")
    return fn(state, **payload)
