"""Edit plan models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# Operation fields that are bookkeeping rather than mutation parameters.
_OPERATION_META_FIELDS = frozenset({"op_id", "type"})


class Operation(BaseModel):
    """A single operation within an edit plan."""

    op_id: str
    type: str  # column.add, row.remove, cell.update_render, ...
    # All remaining fields are operation-specific mutation parameters
    column_id: str | None = None
    row_id: str | None = None
    cell_id: str | None = None
    index: int | None = None
    insert_at: int | None = None
    from_index: int | None = None
    to_index: int | None = None
    height: int | None = None
    patch: dict[str, Any] | None = None
    row: dict[str, Any] | None = None
    variant: dict[str, Any] | None = None
    variants: list[dict[str, Any]] | None = None
    document: dict[str, Any] | None = None
    force: bool = False  # confirm removal of formula-referenced rows/columns

    def payload(self) -> dict[str, Any]:
        """Keyword arguments for the mutation function named by ``type``."""
        return self.model_dump(exclude=_OPERATION_META_FIELDS | {"force"}, exclude_none=True)


class PlanOptions(BaseModel):
    """Options controlling how a plan is applied."""

    backup: bool = True
    fail_on_external_change: bool = True
    confirm_references: bool = False


class PlanTarget(BaseModel):
    """Target template for an edit plan."""

    file: str
    fingerprint: str | None = None


class EditPlan(BaseModel):
    """An edit plan describing intended changes to a template."""

    schema_version: str = "1.0"
    plan_id: str = ""
    target: PlanTarget
    options: PlanOptions = Field(default_factory=PlanOptions)
    operations: list[Operation] = Field(default_factory=list)
