"""Command-specific result models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ColumnMeta(BaseModel):
    """Column summary for ``tpl inspect``."""

    id: str
    name: str
    index: int
    width: int | None = None
    relative_width: float | None = None


class TemplateSummary(BaseModel):
    """Metadata returned by ``tpl inspect``."""

    path: str
    fingerprint: str
    template_id: str = ""
    report_name: str = ""
    page_size: str = "A4"
    page_orientation: str = "portrait"
    columns: list[ColumnMeta] = Field(default_factory=list)
    row_count: int = 0
    rows_by_type: dict[str, int] = Field(default_factory=dict)
    cell_count: int = 0
    merged_cell_count: int = 0
    formula_cell_count: int = 0
    tables: list[str] = Field(default_factory=list)
    variants: list[str] = Field(default_factory=list)


class ReferenceLocation(BaseModel):
    """A formula cell that references a row or column id."""

    row_id: str
    cell_id: str
    row_index: int
    column_index: int

    @property
    def label(self) -> str:
        return f"Row {self.row_index + 1}, Cell {self.column_index + 1}"


class HiddenCell(BaseModel):
    """A grid position covered by a merged cell."""

    row_id: str
    cell_id: str


class WidthResult(BaseModel):
    """Column widths computed by ``layout widths``."""

    mode: str  # screen / export
    widths: list[int] = Field(default_factory=list)
    columns: list[str] = Field(default_factory=list)
    container_width: int | None = None
    page_size: str | None = None
    orientation: str | None = None


class HistoryInfo(BaseModel):
    """Undo/redo stack depths for a session."""

    past: int = 0
    future: int = 0
    can_undo: bool = False
    can_redo: bool = False


class ValidationResult(BaseModel):
    """Result of a validation command."""

    valid: bool = True
    checks: list[dict[str, Any]] = Field(default_factory=list)


class ApplyResult(BaseModel):
    """Result of an apply command."""

    applied: bool = False
    dry_run: bool = False
    backup_path: str | None = None
    operations_applied: int = 0
    fingerprint_before: str = ""
    fingerprint_after: str | None = None


class DryRunSummary(BaseModel):
    """Summary of changes projected during a dry-run."""

    total_operations: int = 0
    total_cells_affected: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    operations: list[dict[str, Any]] = Field(default_factory=list)
