"""Conversion between the normalized store and the hierarchical document."""

from __future__ import annotations

import re
from typing import Any, Iterable, Iterator

from gridtpl.contracts.template import (
    DynamicConfig,
    Row,
    TemplateDocument,
)
from gridtpl.engine.spans import index_merged
from gridtpl.engine.state import (
    COLUMN_ID_PREFIX,
    ROW_ID_PREFIX,
    AnyCell,
    TemplateState,
    default_cell,
    new_cell_id,
)

_SUFFIX_RE = re.compile(r"(\d+)$")


def _sparse(value: Any) -> Any:
    """Drop None values and empty containers, recursively."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            v = _sparse(v)
            if v is None or v == {} or v == []:
                continue
            out[k] = v
        return out
    if isinstance(value, list):
        return [_sparse(v) for v in value]
    return value


def _cell_doc(cell: AnyCell) -> dict[str, Any]:
    body = cell.model_dump(by_alias=True, exclude_defaults=True, exclude_none=True, exclude={"id"})
    body.pop("type", None)
    render = body.get("render") or {}
    for key in ("colspan", "rowspan"):
        if render.get(key) == 1:
            del render[key]
    return _sparse({"type": cell.type, **body})


def to_document(state: TemplateState) -> dict[str, Any]:
    """Denormalize a snapshot into the persisted document shape.

    Cells appear in column order without their ids; values at their
    defaults are omitted.
    """
    rows: list[dict[str, Any]] = []
    for _, row in state.iter_rows():
        entry: dict[str, Any] = {"id": row.id, "rowType": row.row_type}
        if row.is_dynamic:
            if row.dynamic_config is not None:
                entry["dynamicConfig"] = _sparse(
                    row.dynamic_config.model_dump(by_alias=True, exclude_none=True)
                )
        else:
            entry["cells"] = [_cell_doc(c) for c in state.row_cells(row.id)]
        if row.height is not None:
            entry["height"] = row.height
        rows.append(entry)

    return {
        "templateMeta": state.template_meta.model_dump(by_alias=True, exclude_none=True),
        "reportMeta": state.report_meta.model_dump(by_alias=True, exclude_none=True),
        "reportData": {
            "columns": [_sparse(c.model_dump(by_alias=True, exclude_none=True)) for c in state.columns],
            "rows": rows,
        },
        "variants": [v.model_dump(by_alias=True, exclude_none=True) for v in state.variants],
    }


def _allocate_ids(prefix: str, taken: set[str]) -> Iterator[str]:
    """Yield ``<prefix><n>`` ids past the largest numeric suffix in ``taken``."""
    highest = 0
    for ident in taken:
        m = _SUFFIX_RE.search(ident)
        if m:
            highest = max(highest, int(m.group(1)))
    while True:
        highest += 1
        candidate = f"{prefix}{highest}"
        if candidate not in taken:
            taken.add(candidate)
            yield candidate


def _unique_ids(declared: Iterable[str | None], prefix: str) -> list[str]:
    declared = list(declared)
    taken = {d for d in declared if d}
    fresh = _allocate_ids(prefix, set(taken))
    seen: set[str] = set()
    ids: list[str] = []
    for ident in declared:
        if not ident or ident in seen:
            ident = next(fresh)
        seen.add(ident)
        ids.append(ident)
    return ids


def from_document(document: TemplateDocument | dict[str, Any] | None) -> TemplateState:
    """Normalize a document into a fresh snapshot.

    Missing or duplicate column and row ids are replaced, cells without an
    id get a fresh one, and every non-DYNAMIC row is padded or truncated to
    the column count. Row order is kept as given.
    """
    if isinstance(document, TemplateDocument):
        doc = document
    else:
        doc = TemplateDocument.model_validate(document or {})

    column_ids = _unique_ids((c.id for c in doc.report_data.columns), COLUMN_ID_PREFIX)
    columns = tuple(
        col if col.id == cid else col.model_copy(update={"id": cid})
        for col, cid in zip(doc.report_data.columns, column_ids)
    )
    width = len(columns)

    row_ids = _unique_ids((r.id for r in doc.report_data.rows), ROW_ID_PREFIX)
    rows: dict[str, Row] = {}
    cells: dict[str, AnyCell] = {}
    for row_doc, row_id in zip(doc.report_data.rows, row_ids):
        if row_doc.row_type == "DYNAMIC":
            rows[row_id] = Row(
                id=row_id,
                row_type="DYNAMIC",
                dynamic_config=row_doc.dynamic_config or DynamicConfig(),
                height=row_doc.height,
            )
            continue
        supplied = list(row_doc.cells or [])[:width]
        supplied += [default_cell() for _ in range(width - len(supplied))]
        ids: list[str] = []
        for cell in supplied:
            if not cell.id or cell.id in cells:
                cell = cell.model_copy(update={"id": new_cell_id()})
            cells[cell.id] = cell
            ids.append(cell.id)
        rows[row_id] = Row(
            id=row_id,
            row_type=row_doc.row_type,
            cell_ids=tuple(ids),
            height=row_doc.height,
        )

    return TemplateState(
        template_meta=doc.template_meta,
        report_meta=doc.report_meta,
        columns=columns,
        rows=rows,
        cells=cells,
        row_order=tuple(row_ids),
        merged=index_merged(rows, cells),
        variants=tuple(doc.variants),
    )

