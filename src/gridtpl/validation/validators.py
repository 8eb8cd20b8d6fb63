"""Validation logic for templates and edit plans."""

from __future__ import annotations

import inspect
from collections import Counter
from typing import Any

from pydantic import ValidationError

from gridtpl.contracts.plans import EditPlan, Operation
from gridtpl.contracts.responses import ValidationResult
from gridtpl.contracts.template import DbCell
from gridtpl.engine.mutations import MUTATIONS, apply_mutation
from gridtpl.engine.references import (
    dangling_references,
    find_column_references,
    find_row_references,
)
from gridtpl.engine.spans import effective_span, index_merged
from gridtpl.engine.state import TemplateState
from gridtpl.validation.catalog import TableCatalog
from gridtpl.validation.policy import (
    Policy,
    check_operation_policy,
    check_row_limit,
    operation_column,
)

# Failing check type -> error code reported by the CLI.
CHECK_ERROR_CODES = {
    "fingerprint_match": "ERR_PLAN_FINGERPRINT_CONFLICT",
    "references": "ERR_REFERENCES_EXIST",
    "min_columns": "ERR_LAST_COLUMN",
    "protected_column": "ERR_PROTECTED_COLUMN",
    "protected_row": "ERR_PROTECTED_ROW",
    "max_rows": "ERR_VALIDATION_FAILED",
}


def error_code_for(result: ValidationResult, default: str = "ERR_PLAN_INVALID") -> str:
    """Error code of the first failing check."""
    for check in result.checks:
        if not check.get("passed", True):
            return CHECK_ERROR_CODES.get(check.get("type", ""), default)
    return default


def _check(kind: str, passed: bool, message: str, **extra: Any) -> dict[str, Any]:
    return {"type": kind, "passed": passed, "message": message, **extra}


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------
def _structure_checks(state: TemplateState) -> list[dict[str, Any]]:
    checks: list[dict[str, Any]] = []
    width = len(state.columns)

    order_ok = len(state.row_order) == len(set(state.row_order)) and set(state.row_order) == set(state.rows)
    checks.append(_check(
        "row_order", order_ok,
        "Row order matches the row map" if order_ok else "Row order is not a permutation of the row ids",
    ))

    owners: Counter[str] = Counter()
    for _, row in state.iter_rows():
        owners.update(row.cell_ids)
        if row.is_dynamic:
            if row.cell_ids:
                checks.append(_check("cell_count", False, f"DYNAMIC row {row.id} owns cells", row_id=row.id))
        elif len(row.cell_ids) != width:
            checks.append(_check(
                "cell_count", False,
                f"Row {row.id} has {len(row.cell_ids)} cells for {width} columns",
                row_id=row.id,
            ))
    missing = [cid for cid in owners if cid not in state.cells]
    shared = [cid for cid, n in owners.items() if n > 1]
    orphans = [cid for cid in state.cells if cid not in owners]
    for cid in missing:
        checks.append(_check("cell_ownership", False, f"Cell {cid} is referenced but missing", cell_id=cid))
    for cid in shared:
        checks.append(_check("cell_ownership", False, f"Cell {cid} is owned by more than one row", cell_id=cid))
    for cid in orphans:
        checks.append(_check("cell_ownership", False, f"Cell {cid} is not owned by any row", cell_id=cid))

    if state.merged != index_merged(state.rows, state.cells):
        checks.append(_check("merged_index", False, "Merged-cell index is out of date"))
    return checks


def _span_checks(state: TemplateState) -> list[dict[str, Any]]:
    checks: list[dict[str, Any]] = []
    for _, row in state.iter_rows():
        if row.is_dynamic:
            continue
        for cell_id in row.cell_ids:
            if cell_id not in state.merged or cell_id not in state.cells:
                continue
            render = state.cells[cell_id].render
            colspan, rowspan = effective_span(state, row.id, cell_id)
            if (colspan, rowspan) != (render.colspan, render.rowspan):
                checks.append(_check(
                    "span_truncated", True,
                    f"Cell {cell_id} spans {render.colspan}x{render.rowspan} but covers {colspan}x{rowspan}",
                    severity="warning", row_id=row.id, cell_id=cell_id,
                ))
    return checks


def _catalog_checks(state: TemplateState, catalog: TableCatalog) -> list[dict[str, Any]]:
    checks: list[dict[str, Any]] = []
    for _, row in state.iter_rows():
        for cell in state.row_cells(row.id):
            if not isinstance(cell, DbCell) or not cell.source.table:
                continue
            table, column = cell.source.table, cell.source.column
            if catalog.get_table(table) is None:
                checks.append(_check(
                    "catalog", True, f"Cell {cell.id} binds unknown table '{table}'",
                    severity="warning", cell_id=cell.id,
                ))
                continue
            if column and column not in catalog.get_selectable_columns(table):
                checks.append(_check(
                    "catalog", True, f"Column '{table}.{column}' is not selectable",
                    severity="warning", cell_id=cell.id,
                ))
            if not catalog.allows_cell_type(cell.type, table, column):
                checks.append(_check(
                    "catalog", False,
                    f"{cell.type} is not supported for column '{table}.{column}'",
                    cell_id=cell.id,
                ))
        if row.is_dynamic and row.dynamic_config and row.dynamic_config.table:
            if catalog.get_table(row.dynamic_config.table) is None:
                checks.append(_check(
                    "catalog", True,
                    f"Dynamic row {row.id} reads unknown table '{row.dynamic_config.table}'",
                    severity="warning", row_id=row.id,
                ))
    return checks


def validate_template(
    state: TemplateState,
    *,
    catalog: TableCatalog | None = None,
    policy: Policy | None = None,
) -> ValidationResult:
    """Check structural invariants, spans, formula references and catalog bindings."""
    checks = _structure_checks(state)
    checks.extend(_span_checks(state))
    for loc, token in dangling_references(state):
        checks.append(_check(
            "dangling_reference", True,
            f"{loc.label} references missing cell '{token}'",
            severity="warning", row_id=loc.row_id, cell_id=loc.cell_id,
        ))
    if catalog is not None:
        checks.extend(_catalog_checks(state, catalog))
    if policy is not None:
        for v in check_row_limit(policy, state):
            checks.append({**v, "passed": False})

    valid = all(c.get("passed", True) for c in checks)
    return ValidationResult(valid=valid, checks=checks)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------
def _signature_check(op: Operation) -> dict[str, Any] | None:
    fn = MUTATIONS.get(op.type)
    if fn is None:
        return _check("operation_valid", False, f"Unknown operation type '{op.type}'", op_id=op.op_id)
    if op.type.startswith("ui."):
        return _check("operation_valid", False, f"'{op.type}' is not allowed in a plan", op_id=op.op_id)
    try:
        inspect.signature(fn).bind(None, **op.payload())
    except TypeError as e:
        return _check("operation_valid", False, f"Operation {op.op_id}: {e}", op_id=op.op_id)
    return None


def _reference_check(state: TemplateState, op: Operation, confirmed: bool) -> dict[str, Any] | None:
    if op.type == "column.remove":
        _, column_id = operation_column(state, op)
        refs = find_column_references(state, column_id) if column_id else []
        what = f"column '{column_id}'"
    elif op.type == "row.remove" and op.row_id in state.rows:
        refs = find_row_references(state, op.row_id)
        what = f"row '{op.row_id}'"
    else:
        return None
    if not refs or confirmed or op.force:
        return None
    return _check(
        "references", False,
        f"Operation {op.op_id}: {len(refs)} formula cell(s) reference {what}",
        op_id=op.op_id,
        references=[r.model_dump() for r in refs],
    )


def validate_plan(
    state: TemplateState,
    plan: EditPlan,
    *,
    fingerprint: str | None = None,
    policy: Policy | None = None,
) -> ValidationResult:
    """Validate a plan by replaying it on a scratch copy of ``state``.

    Each operation is checked against the state produced by the ones before
    it, so removals referring to rows added earlier in the plan resolve.
    """
    policy = policy or Policy()
    checks: list[dict[str, Any]] = []

    if plan.target.fingerprint and plan.options.fail_on_external_change and fingerprint:
        fp_ok = plan.target.fingerprint == fingerprint
        checks.append(_check(
            "fingerprint_match", fp_ok,
            "Fingerprint matches" if fp_ok else "Fingerprint mismatch: template changed since the plan was created",
            expected=plan.target.fingerprint, actual=fingerprint,
        ))

    confirmed = plan.options.confirm_references or not policy.require_reference_confirmation
    current = state
    seen_ops: set[str] = set()
    for op in plan.operations:
        if op.op_id in seen_ops:
            checks.append(_check("operation_valid", False, f"Duplicate op_id '{op.op_id}'", op_id=op.op_id))
            continue
        seen_ops.add(op.op_id)

        failure = _signature_check(op)
        if failure is not None:
            checks.append(failure)
            continue

        for v in check_operation_policy(policy, current, op):
            checks.append({**v, "passed": False})
        ref_failure = _reference_check(current, op, confirmed)
        if ref_failure is not None:
            checks.append(ref_failure)

        if op.type == "row.add" and (op.row or {}).get("id") in current.rows:
            checks.append(_check(
                "operation_valid", False,
                f"Operation {op.op_id}: row id '{op.row['id']}' already exists",
                op_id=op.op_id,
            ))
            continue

        try:
            after = apply_mutation(current, op.type, **op.payload())
        except (ValidationError, ValueError) as e:
            checks.append(_check("operation_valid", False, f"Operation {op.op_id}: {e}", op_id=op.op_id))
            continue
        checks.append(_check(
            "operation_valid", True,
            f"Operation {op.op_id} is valid" if after is not current else f"Operation {op.op_id} changes nothing",
            op_id=op.op_id,
        ))
        current = after

    for v in check_row_limit(policy, current):
        checks.append({**v, "passed": False})

    valid = all(c.get("passed", True) for c in checks)
    return ValidationResult(valid=valid, checks=checks)
