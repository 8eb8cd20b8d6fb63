"""openpyxl-based layout preview: renders a template grid to an .xlsx sheet."""

from __future__ import annotations

import re
from io import BytesIO
from pathlib import Path
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from gridtpl.contracts.common import WarningDetail
from gridtpl.engine.spans import effective_span, hidden_cells
from gridtpl.engine.state import TemplateState, cell_display
from gridtpl.engine.widths import export_widths
from gridtpl.io.fileops import atomic_write

POINTS_PER_CHAR = 5.25  # Excel column width unit, approx. one digit at 11pt
PX_TO_POINTS = 0.75
HEADER_FILL = PatternFill(fill_type="solid", start_color="FFDDE3EA", end_color="FFDDE3EA")
_SHEET_TITLE_RE = re.compile(r"[\[\]:*?/\\]")


def _sheet_title(name: str) -> str:
    title = _SHEET_TITLE_RE.sub("_", name).strip() or "Template"
    return title[:31]


def _dynamic_label(row: Any) -> str:
    cfg = row.dynamic_config
    if cfg is None:
        return "[DYNAMIC]"
    cols = ", ".join(cfg.selected_columns) or "*"
    return f"[{cfg.source_type}] {cfg.table or '?'}: {cols}"


def _set_text(cell: Any, text: str) -> None:
    cell.value = text
    if text.startswith("="):
        cell.data_type = "s"  # formula labels are shown, not evaluated


def render_workbook(state: TemplateState) -> tuple[Workbook, list[WarningDetail]]:
    """Build the preview workbook. Row 1 carries the column names."""
    wb = Workbook()
    ws = wb.active
    ws.title = _sheet_title(state.report_meta.report_name)
    warnings: list[WarningDetail] = []
    width = len(state.columns)

    meta = state.template_meta
    for idx, w in enumerate(export_widths(state.columns, meta.page_size, meta.page_orientation), start=1):
        ws.column_dimensions[get_column_letter(idx)].width = max(1.0, w / POINTS_PER_CHAR)

    for idx, col in enumerate(state.columns, start=1):
        head = ws.cell(row=1, column=idx, value=col.name)
        head.font = Font(bold=True)
        head.fill = HEADER_FILL
        head.alignment = Alignment(horizontal="center")
    ws.freeze_panes = "A2"

    hidden = hidden_cells(state)
    claimed: set[tuple[int, int]] = set()
    for pos, row in state.iter_rows():
        xl_row = pos + 2
        if row.height:
            ws.row_dimensions[xl_row].height = row.height * PX_TO_POINTS
        if row.is_dynamic:
            cell = ws.cell(row=xl_row, column=1)
            _set_text(cell, _dynamic_label(row))
            cell.font = Font(italic=True)
            if width > 1:
                ws.merge_cells(start_row=xl_row, start_column=1, end_row=xl_row, end_column=width)
            continue

        for c, cell_id in enumerate(row.cell_ids):
            if (row.id, cell_id) in hidden:
                continue
            data = state.cells[cell_id]
            xl_col = c + 1
            out = ws.cell(row=xl_row, column=xl_col)
            _set_text(out, cell_display(data))
            if data.render.bold:
                out.font = Font(bold=True)
            align = data.render.align or state.columns[c].format.align
            if align:
                out.alignment = Alignment(horizontal=align)
            if data.format is not None and data.format.bg_color:
                color = data.format.bg_color.lstrip("#").upper()
                out.fill = PatternFill(fill_type="solid", start_color=color, end_color=color)

            if cell_id not in state.merged:
                continue
            colspan, rowspan = effective_span(state, row.id, cell_id)
            area = {
                (xl_row + r, xl_col + k) for r in range(rowspan) for k in range(colspan)
            }
            if area & claimed:
                warnings.append(WarningDetail(
                    code="WARN_MERGE_OVERLAP",
                    message=f"Merge of cell {cell_id} overlaps another merged range; left unmerged",
                    path=f"{row.id}/{cell_id}",
                ))
                continue
            claimed |= area
            if colspan > 1 or rowspan > 1:
                ws.merge_cells(
                    start_row=xl_row, start_column=xl_col,
                    end_row=xl_row + rowspan - 1, end_column=xl_col + colspan - 1,
                )
    return wb, warnings


def write_xlsx_preview(state: TemplateState, path: str | Path) -> dict[str, Any]:
    """Render ``state`` and write it atomically to ``path``."""
    wb, warnings = render_workbook(state)
    merged_ranges = len(wb.active.merged_cells.ranges)
    buf = BytesIO()
    wb.save(buf)
    atomic_write(path, buf.getvalue())
    return {
        "path": str(Path(path).resolve()),
        "rows": len(state.row_order),
        "columns": len(state.columns),
        "merged_ranges": merged_ranges,
        "warnings": [w.model_dump() for w in warnings],
    }
