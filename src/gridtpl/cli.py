"""Typer CLI application: top-level commands and subcommand groups."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Callable, Optional

import portalocker
import typer

import gridtpl
from gridtpl.contracts.common import ErrorDetail, Target, TemplateCorruptError, WarningDetail
from gridtpl.contracts.plans import EditPlan, Operation, PlanOptions, PlanTarget
from gridtpl.contracts.responses import ApplyResult, WidthResult
from gridtpl.engine.dispatcher import (
    error_envelope,
    exit_code_for,
    print_response,
    success_envelope,
    summarize_changes,
)
from gridtpl.engine.state import TemplateState
from gridtpl.io.fileops import read_text_safe
from gridtpl.observe.events import EventEmitter, Timer, TraceRecorder

# ---------------------------------------------------------------------------
# App & subcommand groups
# ---------------------------------------------------------------------------

_MAIN_HELP = """\
Agent-first CLI for editing tabular report templates (.json).

**Recommended workflow:**  inspect → plan → validate → apply → export

1. `gridtpl tpl inspect -f report.json`  — columns, rows, merged cells, fingerprint
2. `gridtpl refs find -f report.json --row R__3`  — formulas that would break on removal
3. `gridtpl validate plan -f report.json --plan plan.json`
4. `gridtpl apply -f report.json --plan plan.json --dry-run`  — preview changes
5. `gridtpl apply -f report.json --plan plan.json`  — apply with backup
6. `gridtpl export xlsx -f report.json --out preview.xlsx`

**Every command** returns a JSON `ResponseEnvelope`:
`{"ok": bool, "command": "...", "result": {...}, "errors": [...], "warnings": [...], "metrics": {"duration_ms": N}}`

**Safety rails** — all mutating commands support:
- `--dry-run` previews changes without writing
- `--backup` creates a timestamped .bak copy before writing
- an exclusive `<file>.gridtpl.lock` sidecar lock during read-modify-write

**Exit codes:** 0=success, 10=validation, 20=protection, 30=references, 40=conflict, 50=io, 90=internal
"""

_COLUMN_EPILOG = """\
**Examples:**

`gridtpl column add -f report.json --name Amount --width 120`

`gridtpl column rm -f report.json --id C__2 --force`  — also strips formula references

`gridtpl column set -f report.json --index 0 --name "Region" --align center`
"""

_ROW_EPILOG = """\
**Examples:**

`gridtpl row add -f report.json --type HEADER --at 0`

`gridtpl row add -f report.json --type DYNAMIC --dynamic-config '{"table":"sales","selectedColumns":["amount"]}'`

`gridtpl row move -f report.json --from 3 --to 0`

`gridtpl row rm -f report.json --id R__4`
"""

_CELL_EPILOG = """\
**Examples:**

`gridtpl cell get -f report.json --row R__1 --col 0`

`gridtpl cell set -f report.json --row R__1 --col 2 --type FORMULA --expression "cell_R__2_C__3 * 2"`

`gridtpl cell set -f report.json --row R__1 --col 1 --type DB_SUM --table sales --column amount`

`gridtpl cell merge -f report.json --row R__1 --col 0 --colspan 2 --rowspan 2`

**Formula references** use `cell_<rowId>_<columnId>` tokens.
"""

_PLAN_EPILOG = """\
**Edit plans** are JSON files of mutation operations applied atomically:

`{"target": {"file": "report.json"}, "operations": [{"op_id": "op1", "type": "column.add"}]}`

Operation `type` is a mutation kind (`column.add`, `row.remove`, `cell.update_render`, ...);
the other fields are its parameters (`column_id`, `row_id`, `cell_id`, `index`, `patch`, ...).

`gridtpl plan show --plan plan.json`
"""

app = typer.Typer(
    name="gridtpl",
    help=_MAIN_HELP,
    no_args_is_help=True,
    rich_markup_mode="markdown",
)

tpl_app = typer.Typer(
    name="tpl", help="Template-level creation, inspection and lock status.",
    no_args_is_help=True, rich_markup_mode="markdown",
)
column_app = typer.Typer(
    name="column", help="Add, remove and edit columns.",
    epilog=_COLUMN_EPILOG,
    no_args_is_help=True, rich_markup_mode="markdown",
)
row_app = typer.Typer(
    name="row", help="Add, remove, reorder and size rows.",
    epilog=_ROW_EPILOG,
    no_args_is_help=True, rich_markup_mode="markdown",
)
cell_app = typer.Typer(
    name="cell", help="Read, write and merge individual cells.",
    epilog=_CELL_EPILOG,
    no_args_is_help=True, rich_markup_mode="markdown",
)
layout_app = typer.Typer(
    name="layout", help="Derived layout: hidden cells and column widths.",
    no_args_is_help=True, rich_markup_mode="markdown",
)
refs_app = typer.Typer(
    name="refs", help="Formula reference tracking.",
    no_args_is_help=True, rich_markup_mode="markdown",
)
validate_app = typer.Typer(
    name="validate", help="Validate templates and edit plans.",
    no_args_is_help=True, rich_markup_mode="markdown",
)
plan_app = typer.Typer(
    name="plan", help="Inspect edit plans.",
    epilog=_PLAN_EPILOG,
    no_args_is_help=True, rich_markup_mode="markdown",
)
export_app = typer.Typer(
    name="export", help="Export layout previews.",
    no_args_is_help=True, rich_markup_mode="markdown",
)

app.add_typer(tpl_app)
app.add_typer(column_app)
app.add_typer(row_app)
app.add_typer(cell_app)
app.add_typer(layout_app)
app.add_typer(refs_app)
app.add_typer(validate_app)
app.add_typer(plan_app)
app.add_typer(export_app)

# Process-wide switches set by the root callback.
_OPTIONS: dict[str, Any] = {"events": False}


@app.callback(invoke_without_command=True)
def _root(
    version: Annotated[
        bool, typer.Option("--version", "-V", help="Print version and exit.", is_eager=True)
    ] = False,
    events: Annotated[
        bool, typer.Option("--events", help="Emit NDJSON lifecycle events on stderr.")
    ] = False,
) -> None:
    if version:
        typer.echo(gridtpl.__version__)
        raise typer.Exit()
    _OPTIONS["events"] = events


# Type aliases for common options
FilePath = Annotated[str, typer.Option("--file", "-f", help="Path to the template .json file")]
DryRun = Annotated[bool, typer.Option("--dry-run", help="Preview changes without writing to disk")]
Backup = Annotated[bool, typer.Option("--backup", help="Create timestamped .bak copy before writing")]
Force = Annotated[bool, typer.Option("--force", help="Proceed even if formulas reference the removed item")]
JsonArg = Annotated[Optional[str], typer.Option(help="Inline JSON object")]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _emitter() -> EventEmitter:
    return EventEmitter(enabled=bool(_OPTIONS.get("events")))


def _emit(envelope, code=None):
    print_response(envelope)
    raise typer.Exit(code if code is not None else exit_code_for(envelope))


def _load_ctx_or_emit(file: str, cmd: str):
    """Load a TemplateContext, or emit an error envelope."""
    from gridtpl.engine.context import TemplateContext

    try:
        return TemplateContext(file, emitter=_emitter())
    except FileNotFoundError:
        _emit(error_envelope(cmd, "ERR_TEMPLATE_NOT_FOUND", f"File not found: {file}", target=Target(file=file)))
    except TemplateCorruptError as e:
        _emit(error_envelope(cmd, "ERR_TEMPLATE_CORRUPT", str(e), target=Target(file=file)))


def _parse_json_option(cmd: str, file: str, name: str, raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        _emit(error_envelope(cmd, "ERR_INVALID_ARGUMENT", f"--{name} is not valid JSON: {e}", target=Target(file=file)))


def _load_edit_plan(plan_path: str) -> EditPlan:
    """Load and validate a raw EditPlan JSON file."""
    try:
        data = json.loads(read_text_safe(plan_path))
    except Exception as e:
        raise ValueError(f"Cannot parse plan: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("Plan file must contain a JSON object.")

    if {"ok", "command", "result"}.issubset(data):
        # Accept a ResponseEnvelope wrapping a plan body.
        inner = data.get("result")
        if isinstance(inner, dict) and "target" in inner and "operations" in inner:
            data = inner
        else:
            raise ValueError("Plan file contains a ResponseEnvelope without a plan body.")

    missing = [k for k in ("target", "operations") if k not in data]
    if missing:
        raise ValueError(f"Plan file missing required keys: {', '.join(missing)}")

    try:
        return EditPlan(**data)
    except Exception as e:
        raise ValueError(f"Cannot parse plan: {e}") from e


def _policy_for(path: Path):
    from gridtpl.validation.policy import Policy

    return Policy.load_from_dir(path.parent)


PlanBuilder = Callable[[TemplateState], list[Operation]]


def _mutate(
    command: str,
    file: str,
    build: PlanBuilder,
    *,
    dry_run: bool,
    backup: bool,
    force: bool = False,
    target: Target | None = None,
    result_of: Callable[[TemplateState], dict[str, Any]] | None = None,
) -> None:
    """Lock, load, validate, apply and save one batch of operations."""
    from gridtpl.io.fileops import TemplateLock
    from gridtpl.io.fileops import backup as make_backup
    from gridtpl.validation.validators import error_code_for, validate_plan

    target = target or Target(file=file)
    if not Path(file).exists():
        _emit(error_envelope(command, "ERR_TEMPLATE_NOT_FOUND", f"File not found: {file}", target=target))

    with Timer() as t:
        try:
            with TemplateLock(file):
                ctx = _load_ctx_or_emit(file, command)
                try:
                    operations = build(ctx.state)
                except (KeyError, ValueError) as e:
                    _emit(error_envelope(command, "ERR_INVALID_ARGUMENT", _message(e), target=target))
                plan = EditPlan(
                    plan_id=command,
                    target=PlanTarget(file=file, fingerprint=ctx.fp),
                    options=PlanOptions(backup=backup, confirm_references=force),
                    operations=operations,
                )
                validation = validate_plan(ctx.state, plan, fingerprint=ctx.fp, policy=_policy_for(ctx.path))
                if not validation.valid:
                    failed = [c for c in validation.checks if not c.get("passed", True)]
                    _emit(error_envelope(
                        command, error_code_for(validation, "ERR_VALIDATION_FAILED"),
                        failed[0]["message"], target=target, details={"checks": failed},
                    ))
                changes = ctx.apply_plan(plan)
                backup_path = None
                if not dry_run and changes:
                    if backup:
                        backup_path = make_backup(ctx.path)
                    ctx.save()
        except portalocker.LockException:
            _emit(error_envelope(command, "ERR_LOCK_HELD", f"Template is locked by another process: {file}", target=target))

    result: dict[str, Any] = {"dry_run": dry_run, "backup_path": backup_path, "fingerprint": ctx.fp}
    if result_of is not None:
        result.update(result_of(ctx.state))
    env = success_envelope(command, result, target=target, changes=changes, duration_ms=t.elapsed_ms)
    if not changes:
        env.warnings = [WarningDetail(code="WARN_NO_CHANGE", message="Nothing to change")]
    _emit(env)


def _message(exc: Exception) -> str:
    return str(exc.args[0]) if isinstance(exc, KeyError) and exc.args else str(exc)


def _op(kind: str, op_id: str = "op1", **fields: Any) -> Operation:
    return Operation(op_id=op_id, type=kind, **{k: v for k, v in fields.items() if v is not None})


def _resolve_cell(state: TemplateState, row_id: str | None, col: int | None, cell_id: str | None) -> tuple[str, str, int]:
    """Find ``(row_id, cell_id, column_index)`` from a row + column or a cell id."""
    from gridtpl.engine.state import find_cell

    if cell_id:
        found = find_cell(state, cell_id)
        if found is None:
            raise KeyError(f"Cell not found: {cell_id}")
        return found[0], cell_id, found[1]
    if row_id is None or col is None:
        raise ValueError("Give --cell, or --row together with --col")
    row = state.rows.get(row_id)
    if row is None:
        raise KeyError(f"Row not found: {row_id}")
    if row.is_dynamic:
        raise ValueError(f"Row {row_id} is DYNAMIC and has no cells")
    if not 0 <= col < len(row.cell_ids):
        raise ValueError(f"Column index {col} out of range (0..{len(row.cell_ids) - 1})")
    return row_id, row.cell_ids[col], col


# ---------------------------------------------------------------------------
# gridtpl version
# ---------------------------------------------------------------------------
@app.command()
def version():
    """Print the gridtpl CLI version.

    Example: `gridtpl version`
    """
    _emit(success_envelope("version", {"version": gridtpl.__version__}))


# ---------------------------------------------------------------------------
# gridtpl tpl
# ---------------------------------------------------------------------------
@tpl_app.command("create")
def tpl_create(
    file: FilePath,
    template_id: Annotated[Optional[str], typer.Option("--template-id", help="Template identifier")] = None,
    report_name: Annotated[Optional[str], typer.Option("--report-name", help="Report title")] = None,
    sample_rows: Annotated[int, typer.Option("--sample-rows", help="Fill with a five-column sample grid of N rows")] = 0,
    force: Annotated[bool, typer.Option("--force", help="Overwrite file if it already exists")] = False,
):
    """Create a new template file. Non-mutating (creates a new file).

    Example: `gridtpl tpl create -f report.json --report-name "Monthly Sales"`

    Example: `gridtpl tpl create -f load.json --sample-rows 5000`
    """
    from gridtpl.engine.context import TemplateContext

    p = Path(file).resolve()
    with Timer() as t:
        if p.exists() and not force:
            _emit(error_envelope(
                "tpl.create", "ERR_FILE_EXISTS",
                f"File already exists: {p}. Use --force to overwrite.",
                target=Target(file=file),
            ))
        if p.exists() and force:
            p.unlink()
        try:
            ctx = TemplateContext.create(
                p, template_id=template_id, report_name=report_name,
                sample_rows=max(0, sample_rows), emitter=_emitter(),
            )
        except OSError as e:
            _emit(error_envelope("tpl.create", "ERR_IO", str(e), target=Target(file=file)))

    env = success_envelope("tpl.create", ctx.get_summary().model_dump(), target=Target(file=file), duration_ms=t.elapsed_ms)
    _emit(env)


@tpl_app.command("inspect")
def tpl_inspect(file: FilePath):
    """Inspect template metadata — columns, row counts by type, merged cells, fingerprint.

    Start here when working with an unfamiliar template.

    Example: `gridtpl tpl inspect -f report.json`
    """
    with Timer() as t:
        ctx = _load_ctx_or_emit(file, "tpl.inspect")
        summary = ctx.get_summary()
    _emit(success_envelope("tpl.inspect", summary.model_dump(), target=Target(file=file), duration_ms=t.elapsed_ms))


@tpl_app.command("lock-status")
def tpl_lock_status(file: FilePath):
    """Check whether another process holds the template's sidecar lock.

    Example: `gridtpl tpl lock-status -f report.json`
    """
    from gridtpl.io.fileops import check_lock

    with Timer() as t:
        result = check_lock(file)
    _emit(success_envelope("tpl.lock_status", result, target=Target(file=file), duration_ms=t.elapsed_ms))


# ---------------------------------------------------------------------------
# gridtpl column
# ---------------------------------------------------------------------------
def _format_patch(width: int | None, relative_width: float | None, align: str | None) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    if width is not None:
        patch["width"] = width
    if relative_width is not None:
        patch["relativeWidth"] = relative_width
    if align is not None:
        patch["align"] = align
    return patch


@column_app.command("add")
def column_add(
    file: FilePath,
    name: Annotated[Optional[str], typer.Option("--name", "-n", help="Column name (default: 'Column <n>')")] = None,
    width: Annotated[Optional[int], typer.Option("--width", help="Screen width in px (default 150)")] = None,
    relative_width: Annotated[Optional[float], typer.Option("--relative-width", help="Export weight")] = None,
    dry_run: DryRun = False,
    backup: Backup = False,
):
    """Append a column; every non-DYNAMIC row gets one empty TEXT cell. Mutating.

    Example: `gridtpl column add -f report.json --name Amount`
    """
    def build(state: TemplateState) -> list[Operation]:
        idx = len(state.columns)
        ops = [_op("column.add")]
        if name:
            ops.append(_op("column.update", "op2", index=idx, patch={"name": name}))
        fmt = _format_patch(width, relative_width, None)
        if fmt:
            ops.append(_op("column.update_format", "op3", index=idx, patch=fmt))
        return ops

    _mutate(
        "column.add", file, build, dry_run=dry_run, backup=backup,
        result_of=lambda s: {"column": s.columns[-1].model_dump(by_alias=True) if s.columns else None},
    )


@column_app.command("rm")
def column_rm(
    file: FilePath,
    column_id: Annotated[Optional[str], typer.Option("--id", help="Column id (e.g. C__2)")] = None,
    index: Annotated[Optional[int], typer.Option("--index", help="Zero-based column index")] = None,
    force: Force = False,
    dry_run: DryRun = False,
    backup: Backup = False,
):
    """Remove a column and its cells. Mutating.

    Fails with ERR_REFERENCES_EXIST when formulas reference the column,
    unless `--force`; forced removal strips those references.

    Example: `gridtpl column rm -f report.json --id C__2`
    """
    if column_id is None and index is None:
        _emit(error_envelope("column.rm", "ERR_INVALID_ARGUMENT", "Give --id or --index", target=Target(file=file)))

    def build(state: TemplateState) -> list[Operation]:
        if column_id and state.column_index(column_id) is None and index is None:
            raise KeyError(f"Column not found: {column_id}")
        if index is not None and not column_id and not 0 <= index < len(state.columns):
            raise ValueError(f"Column index {index} out of range")
        return [_op("column.remove", column_id=column_id, index=index, force=force)]

    _mutate("column.rm", file, build, dry_run=dry_run, backup=backup, force=force,
            target=Target(file=file, column=column_id))


@column_app.command("set")
def column_set(
    file: FilePath,
    index: Annotated[Optional[int], typer.Option("--index", help="Zero-based column index")] = None,
    column_id: Annotated[Optional[str], typer.Option("--id", help="Column id")] = None,
    name: Annotated[Optional[str], typer.Option("--name", "-n", help="New column name")] = None,
    width: Annotated[Optional[int], typer.Option("--width", help="Screen width in px")] = None,
    relative_width: Annotated[Optional[float], typer.Option("--relative-width", help="Export weight")] = None,
    align: Annotated[Optional[str], typer.Option("--align", help="left, center or right")] = None,
    dry_run: DryRun = False,
    backup: Backup = False,
):
    """Rename a column or change its format. Mutating.

    Example: `gridtpl column set -f report.json --index 1 --name Region --width 200`
    """
    def build(state: TemplateState) -> list[Operation]:
        idx = state.column_index(column_id) if column_id else index
        if idx is None or not 0 <= idx < len(state.columns):
            raise KeyError(f"Column not found: {column_id if column_id else index}")
        ops = []
        if name is not None:
            ops.append(_op("column.update", "op1", index=idx, patch={"name": name}))
        fmt = _format_patch(width, relative_width, align)
        if fmt:
            ops.append(_op("column.update_format", "op2", index=idx, patch=fmt))
        if not ops:
            raise ValueError("Nothing to set: give --name, --width, --relative-width or --align")
        return ops

    _mutate("column.set", file, build, dry_run=dry_run, backup=backup, target=Target(file=file, column=column_id))


# ---------------------------------------------------------------------------
# gridtpl row
# ---------------------------------------------------------------------------
@row_app.command("add")
def row_add(
    file: FilePath,
    row_type: Annotated[str, typer.Option("--type", "-t", help="HEADER, DATA, SEPARATOR, DYNAMIC or FOOTER")] = "DATA",
    row_id: Annotated[Optional[str], typer.Option("--id", help="Row id (default: next R__<n>)")] = None,
    at: Annotated[Optional[int], typer.Option("--at", help="Insert position (default: append)")] = None,
    cells: Annotated[Optional[str], typer.Option("--cells", help="JSON array of cell objects")] = None,
    dynamic_config: Annotated[Optional[str], typer.Option("--dynamic-config", help="JSON object for DYNAMIC rows")] = None,
    dry_run: DryRun = False,
    backup: Backup = False,
):
    """Insert a row. Mutating.

    Example: `gridtpl row add -f report.json --type HEADER --at 0`
    """
    row: dict[str, Any] = {"rowType": row_type.upper()}
    if row_id:
        row["id"] = row_id
    parsed_cells = _parse_json_option("row.add", file, "cells", cells)
    if parsed_cells is not None:
        row["cells"] = parsed_cells
    parsed_cfg = _parse_json_option("row.add", file, "dynamic-config", dynamic_config)
    if parsed_cfg is not None:
        row["dynamicConfig"] = parsed_cfg

    before: set[str] = set()

    def build(state: TemplateState) -> list[Operation]:
        before.update(state.rows)
        return [_op("row.add", row=row, insert_at=at)]

    def result_of(state: TemplateState) -> dict[str, Any]:
        new_ids = [r for r in state.row_order if r not in before]
        return {"row_id": new_ids[0] if new_ids else row_id}

    _mutate("row.add", file, build, dry_run=dry_run, backup=backup, result_of=result_of,
            target=Target(file=file, row=row_id))


@row_app.command("rm")
def row_rm(
    file: FilePath,
    row_id: Annotated[str, typer.Option("--id", help="Row id")],
    force: Force = False,
    dry_run: DryRun = False,
    backup: Backup = False,
):
    """Remove a row with its cells. Mutating.

    Fails with ERR_REFERENCES_EXIST when formulas reference the row,
    unless `--force`; forced removal strips those references.

    Example: `gridtpl row rm -f report.json --id R__4 --force`
    """
    def build(state: TemplateState) -> list[Operation]:
        if row_id not in state.rows:
            raise KeyError(f"Row not found: {row_id}")
        return [_op("row.remove", row_id=row_id, force=force)]

    _mutate("row.rm", file, build, dry_run=dry_run, backup=backup, force=force, target=Target(file=file, row=row_id))


@row_app.command("move")
def row_move(
    file: FilePath,
    from_index: Annotated[int, typer.Option("--from", help="Current zero-based position")],
    to_index: Annotated[int, typer.Option("--to", help="New zero-based position")],
    dry_run: DryRun = False,
    backup: Backup = False,
):
    """Move a row within the row order. Mutating.

    Example: `gridtpl row move -f report.json --from 3 --to 0`
    """
    def build(state: TemplateState) -> list[Operation]:
        n = len(state.row_order)
        if not (0 <= from_index < n and 0 <= to_index < n):
            raise ValueError(f"Row positions must be within 0..{n - 1}")
        return [_op("row.reorder", from_index=from_index, to_index=to_index)]

    _mutate("row.move", file, build, dry_run=dry_run, backup=backup,
            result_of=lambda s: {"row_order": list(s.row_order)})


@row_app.command("height")
def row_height(
    file: FilePath,
    row_id: Annotated[str, typer.Option("--id", help="Row id")],
    height: Annotated[Optional[int], typer.Option("--height", help="Height in px; omit to clear")] = None,
    dry_run: DryRun = False,
    backup: Backup = False,
):
    """Set or clear a row's height. Mutating.

    Example: `gridtpl row height -f report.json --id R__1 --height 32`
    """
    def build(state: TemplateState) -> list[Operation]:
        if row_id not in state.rows:
            raise KeyError(f"Row not found: {row_id}")
        return [_op("row.update", row_id=row_id, patch={"height": height})]

    _mutate("row.height", file, build, dry_run=dry_run, backup=backup, target=Target(file=file, row=row_id))


# ---------------------------------------------------------------------------
# gridtpl cell
# ---------------------------------------------------------------------------
RowOpt = Annotated[Optional[str], typer.Option("--row", "-r", help="Row id")]
ColOpt = Annotated[Optional[int], typer.Option("--col", "-c", help="Zero-based column index")]
CellOpt = Annotated[Optional[str], typer.Option("--cell", help="Cell id (alternative to --row/--col)")]


@cell_app.command("get")
def cell_get(file: FilePath, row: RowOpt = None, col: ColOpt = None, cell: CellOpt = None):
    """Read one cell: its data, display label, span and visibility.

    Example: `gridtpl cell get -f report.json --row R__1 --col 0`
    """
    from gridtpl.engine.spans import effective_span
    from gridtpl.engine.state import cell_display

    with Timer() as t:
        ctx = _load_ctx_or_emit(file, "cell.get")
        try:
            row_id, cell_id, col_idx = _resolve_cell(ctx.state, row, col, cell)
        except (KeyError, ValueError) as e:
            _emit(error_envelope("cell.get", "ERR_INVALID_ARGUMENT", _message(e), target=Target(file=file, row=row, cell=cell)))
        data = ctx.state.cells[cell_id]
        colspan, rowspan = effective_span(ctx.state, row_id, cell_id)
        result = {
            "row_id": row_id,
            "cell_id": cell_id,
            "column_index": col_idx,
            "column_id": ctx.state.columns[col_idx].id if col_idx < len(ctx.state.columns) else None,
            "cell": data.model_dump(by_alias=True, exclude_none=True),
            "display": cell_display(data),
            "hidden": ctx.session.is_hidden(row_id, cell_id),
            "effective_span": {"colspan": colspan, "rowspan": rowspan},
        }
    _emit(success_envelope("cell.get", result, target=Target(file=file, row=row_id, cell=cell_id), duration_ms=t.elapsed_ms))


@cell_app.command("set")
def cell_set(
    file: FilePath,
    row: RowOpt = None,
    col: ColOpt = None,
    cell: CellOpt = None,
    cell_type: Annotated[Optional[str], typer.Option("--type", "-t", help="TEXT, FORMULA, DB_VALUE, DB_SUM, ...")] = None,
    value: Annotated[Optional[str], typer.Option("--value", help="Literal text (TEXT cells)")] = None,
    expression: Annotated[Optional[str], typer.Option("--expression", help="Formula expression (FORMULA cells)")] = None,
    table: Annotated[Optional[str], typer.Option("--table", help="Source table (DB cells)")] = None,
    column: Annotated[Optional[str], typer.Option("--column", help="Source column (DB cells)")] = None,
    bold: Annotated[Optional[bool], typer.Option("--bold/--no-bold", help="Render bold")] = None,
    align: Annotated[Optional[str], typer.Option("--align", help="left, center or right")] = None,
    dry_run: DryRun = False,
    backup: Backup = False,
):
    """Write one cell's content, kind, data binding or render hints. Mutating.

    Changing `--type` converts the cell; fields of the old kind are dropped.

    Example: `gridtpl cell set -f report.json --row R__2 --col 1 --type DB_SUM --table sales --column amount`
    """
    def build(state: TemplateState) -> list[Operation]:
        _, cell_id, _ = _resolve_cell(state, row, col, cell)
        patch: dict[str, Any] = {}
        if cell_type is not None:
            patch["type"] = cell_type.upper()
        if value is not None:
            patch["value"] = value
        if expression is not None:
            patch["expression"] = expression
        ops: list[Operation] = []
        if patch:
            ops.append(_op("cell.update", "op1", cell_id=cell_id, patch=patch))
        source = {k: v for k, v in (("table", table), ("column", column)) if v is not None}
        if source:
            ops.append(_op("cell.update_source", "op2", cell_id=cell_id, patch=source))
        render = {k: v for k, v in (("bold", bold), ("align", align)) if v is not None}
        if render:
            ops.append(_op("cell.update_render", "op3", cell_id=cell_id, patch=render))
        if not ops:
            raise ValueError("Nothing to set")
        return ops

    _mutate("cell.set", file, build, dry_run=dry_run, backup=backup, target=Target(file=file, row=row, cell=cell))


@cell_app.command("merge")
def cell_merge(
    file: FilePath,
    row: RowOpt = None,
    col: ColOpt = None,
    cell: CellOpt = None,
    colspan: Annotated[int, typer.Option("--colspan", help="Columns covered (1 = no merge)")] = 1,
    rowspan: Annotated[int, typer.Option("--rowspan", help="Rows covered (1 = no merge)")] = 1,
    dry_run: DryRun = False,
    backup: Backup = False,
):
    """Set a cell's colspan/rowspan; `--colspan 1 --rowspan 1` unmerges. Mutating.

    Spans that run past the grid or into a DYNAMIC row are truncated when
    rendered; `validate template` reports them.

    Example: `gridtpl cell merge -f report.json --row R__1 --col 0 --colspan 3`
    """
    def build(state: TemplateState) -> list[Operation]:
        _, cell_id, _ = _resolve_cell(state, row, col, cell)
        return [_op("cell.update_render", cell_id=cell_id, patch={"colspan": colspan, "rowspan": rowspan})]

    _mutate(
        "cell.merge", file, build, dry_run=dry_run, backup=backup,
        target=Target(file=file, row=row, cell=cell),
        result_of=lambda s: {"merged_cells": len(s.merged)},
    )


# ---------------------------------------------------------------------------
# gridtpl layout
# ---------------------------------------------------------------------------
@layout_app.command("hidden")
def layout_hidden(file: FilePath):
    """List grid positions covered by merged cells.

    Example: `gridtpl layout hidden -f report.json`
    """
    from gridtpl.contracts.responses import HiddenCell

    with Timer() as t:
        ctx = _load_ctx_or_emit(file, "layout.hidden")
        order = {rid: i for i, rid in enumerate(ctx.state.row_order)}
        hidden = sorted(ctx.session.hidden_cells(), key=lambda p: (order.get(p[0], 0), p[1]))
        result = {
            "count": len(hidden),
            "cells": [HiddenCell(row_id=r, cell_id=c).model_dump() for r, c in hidden],
        }
    _emit(success_envelope("layout.hidden", result, target=Target(file=file), duration_ms=t.elapsed_ms))


@layout_app.command("widths")
def layout_widths(
    file: FilePath,
    mode: Annotated[str, typer.Option("--mode", help="screen or export")] = "screen",
    container: Annotated[int, typer.Option("--container", help="Container width in px (screen mode)")] = 1200,
    page_size: Annotated[Optional[str], typer.Option("--page-size", help="A4 or LETTER (export mode)")] = None,
    orientation: Annotated[Optional[str], typer.Option("--orientation", help="portrait or landscape (export mode)")] = None,
):
    """Compute per-column widths for the editor canvas or for print/export.

    Example: `gridtpl layout widths -f report.json --mode export --orientation landscape`
    """
    from gridtpl.engine.widths import export_widths, screen_widths

    with Timer() as t:
        ctx = _load_ctx_or_emit(file, "layout.widths")
        state = ctx.state
        ids = [c.id for c in state.columns]
        if mode == "screen":
            result = WidthResult(mode="screen", widths=screen_widths(state.columns, container),
                                 columns=ids, container_width=container)
        elif mode == "export":
            size = page_size or state.template_meta.page_size
            orient = orientation or state.template_meta.page_orientation
            result = WidthResult(mode="export", widths=export_widths(state.columns, size, orient),
                                 columns=ids, page_size=size, orientation=orient)
        else:
            _emit(error_envelope("layout.widths", "ERR_INVALID_ARGUMENT", f"Unknown mode: {mode}", target=Target(file=file)))
    _emit(success_envelope("layout.widths", result.model_dump(), target=Target(file=file), duration_ms=t.elapsed_ms))


# ---------------------------------------------------------------------------
# gridtpl refs
# ---------------------------------------------------------------------------
@refs_app.command("find")
def refs_find(
    file: FilePath,
    row: Annotated[Optional[str], typer.Option("--row", "-r", help="Row id")] = None,
    column: Annotated[Optional[str], typer.Option("--column", "-c", help="Column id")] = None,
):
    """List formula cells that reference a row or a column.

    Run before removing a row or column.

    Example: `gridtpl refs find -f report.json --row R__2`
    """
    from gridtpl.engine.references import find_column_references, find_row_references

    if bool(row) == bool(column):
        _emit(error_envelope("refs.find", "ERR_INVALID_ARGUMENT", "Give exactly one of --row or --column", target=Target(file=file)))
    with Timer() as t:
        ctx = _load_ctx_or_emit(file, "refs.find")
        refs = find_row_references(ctx.state, row) if row else find_column_references(ctx.state, column)
        result = {
            "count": len(refs),
            "references": [{**r.model_dump(), "label": r.label} for r in refs],
        }
    _emit(success_envelope("refs.find", result, target=Target(file=file, row=row, column=column), duration_ms=t.elapsed_ms))


# ---------------------------------------------------------------------------
# gridtpl validate
# ---------------------------------------------------------------------------
@validate_app.command("template")
def validate_template_cmd(
    file: FilePath,
    catalog_path: Annotated[Optional[str], typer.Option("--catalog", help="Table catalog YAML/JSON (default: gridtpl-tables.yaml beside the template)")] = None,
):
    """Check structural invariants, merged spans, formula references and DB bindings.

    Example: `gridtpl validate template -f report.json --catalog tables.yaml`
    """
    from gridtpl.validation.catalog import TableCatalog
    from gridtpl.validation.validators import validate_template

    with Timer() as t:
        ctx = _load_ctx_or_emit(file, "validate.template")
        try:
            catalog = TableCatalog.load(catalog_path) if catalog_path else TableCatalog.load_from_dir(ctx.path.parent)
        except (OSError, ValueError) as e:
            _emit(error_envelope("validate.template", "ERR_INVALID_ARGUMENT", f"Cannot load catalog: {e}", target=Target(file=file)))
        result = validate_template(ctx.state, catalog=catalog, policy=_policy_for(ctx.path))

    env = success_envelope("validate.template", result.model_dump(), target=Target(file=file), duration_ms=t.elapsed_ms)
    env.warnings = [
        WarningDetail(code=f"WARN_{c['type'].upper()}", message=c["message"])
        for c in result.checks if c.get("severity") == "warning"
    ]
    if not result.valid:
        failed = [c for c in result.checks if not c.get("passed", True)]
        env.ok = False
        env.errors = [ErrorDetail(code="ERR_VALIDATION_FAILED", message="Template validation failed", details={"checks": failed})]
    _emit(env)


@validate_app.command("plan")
def validate_plan_cmd(
    file: FilePath,
    plan_path: Annotated[str, typer.Option("--plan", help="Path to edit plan JSON file")],
):
    """Validate an edit plan against a template before applying.

    Replays the plan on a scratch copy: fingerprint, operation parameters,
    protected rows/columns, formula references, row limits.

    Example: `gridtpl validate plan -f report.json --plan plan.json`
    """
    from gridtpl.validation.validators import error_code_for, validate_plan

    try:
        plan = _load_edit_plan(plan_path)
    except ValueError as e:
        _emit(error_envelope("validate.plan", "ERR_PLAN_INVALID", str(e), target=Target(file=file)))

    with Timer() as t:
        ctx = _load_ctx_or_emit(file, "validate.plan")
        result = validate_plan(ctx.state, plan, fingerprint=ctx.fp, policy=_policy_for(ctx.path))

    env = success_envelope("validate.plan", result.model_dump(), target=Target(file=file), duration_ms=t.elapsed_ms)
    if not result.valid:
        failed = [c for c in result.checks if not c.get("passed", True)]
        env.ok = False
        env.errors = [ErrorDetail(
            code=error_code_for(result, "ERR_VALIDATION_FAILED"),
            message="Plan validation failed",
            details={"checks": failed},
        )]
    _emit(env)


# ---------------------------------------------------------------------------
# gridtpl plan show
# ---------------------------------------------------------------------------
@plan_app.command("show")
def plan_show(plan_path: Annotated[str, typer.Option("--plan", help="Path to edit plan JSON file")]):
    """Display the contents of an edit plan.

    Example: `gridtpl plan show --plan plan.json`
    """
    try:
        plan = _load_edit_plan(plan_path)
    except ValueError as e:
        _emit(error_envelope("plan.show", "ERR_PLAN_INVALID", str(e), target=Target(file=plan_path)))
    _emit(success_envelope("plan.show", plan.model_dump()))


# ---------------------------------------------------------------------------
# gridtpl apply
# ---------------------------------------------------------------------------
@app.command("apply")
def apply_cmd(
    file: FilePath,
    plan_path: Annotated[str, typer.Option("--plan", help="Path to edit plan JSON file")],
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Preview all changes without writing to disk")] = False,
    do_backup: Annotated[bool, typer.Option("--backup/--no-backup", help="Create timestamped .bak copy before writing (default: on)")] = True,
    trace_path: Annotated[Optional[str], typer.Option("--trace", help="Write a JSON timing trace to this path")] = None,
):
    """Apply an edit plan to a template. Mutating.

    Validates the plan first; every operation applies or none do.
    Backup is on by default.

    Example (preview): `gridtpl apply -f report.json --plan plan.json --dry-run`

    Example (apply): `gridtpl apply -f report.json --plan plan.json`
    """
    from gridtpl.io.fileops import TemplateLock
    from gridtpl.io.fileops import backup as make_backup
    from gridtpl.validation.validators import error_code_for, validate_plan

    try:
        plan = _load_edit_plan(plan_path)
    except ValueError as e:
        _emit(error_envelope("apply", "ERR_PLAN_INVALID", str(e), target=Target(file=file)))

    trace = TraceRecorder(file, plan.plan_id) if trace_path else None
    with Timer() as t:
        try:
            with TemplateLock(file):
                ctx = _load_ctx_or_emit(file, "apply")
                fp_before = ctx.fp
                if plan.target.fingerprint and plan.options.fail_on_external_change and plan.target.fingerprint != fp_before:
                    _emit(error_envelope(
                        "apply", "ERR_PLAN_FINGERPRINT_CONFLICT",
                        "Template fingerprint changed since plan was created",
                        target=Target(file=file),
                        details={"expected": plan.target.fingerprint, "actual": fp_before},
                    ))

                val_result = validate_plan(ctx.state, plan, fingerprint=fp_before, policy=_policy_for(ctx.path))
                if not val_result.valid:
                    _emit(error_envelope(
                        "apply", error_code_for(val_result, "ERR_VALIDATION_FAILED"),
                        "Plan validation failed",
                        target=Target(file=file),
                        details={"checks": [c for c in val_result.checks if not c.get("passed", True)]},
                    ))

                changes = ctx.apply_plan(plan, trace=trace)
                backup_path = None
                fp_after = None
                if not dry_run:
                    if do_backup:
                        backup_path = make_backup(ctx.path)
                    ctx.save()
                    fp_after = ctx.fp
        except portalocker.LockException:
            _emit(error_envelope("apply", "ERR_LOCK_HELD", f"Template is locked by another process: {file}", target=Target(file=file)))

    result_data = ApplyResult(
        applied=not dry_run,
        dry_run=dry_run,
        backup_path=backup_path,
        operations_applied=len(changes),
        fingerprint_before=fp_before,
        fingerprint_after=fp_after,
    ).model_dump()
    if dry_run and changes:
        result_data["dry_run_summary"] = summarize_changes(changes)
    if trace is not None:
        result_data["trace_path"] = trace.save(
            trace_path, dry_run=dry_run, fingerprint_before=fp_before, fingerprint_after=fp_after,
        )

    _emit(success_envelope("apply", result_data, target=Target(file=file), changes=changes, duration_ms=t.elapsed_ms))


# ---------------------------------------------------------------------------
# gridtpl export xlsx
# ---------------------------------------------------------------------------
@export_app.command("xlsx")
def export_xlsx(
    file: FilePath,
    out: Annotated[str, typer.Option("--out", "-o", help="Destination .xlsx path")],
):
    """Write a layout preview workbook: labels, merges, widths, bold and alignment.

    Example: `gridtpl export xlsx -f report.json --out preview.xlsx`
    """
    from gridtpl.adapters.openpyxl_export import write_xlsx_preview

    with Timer() as t:
        ctx = _load_ctx_or_emit(file, "export.xlsx")
        try:
            result = write_xlsx_preview(ctx.state, out)
        except OSError as e:
            _emit(error_envelope("export.xlsx", "ERR_IO", str(e), target=Target(file=file)))
    env = success_envelope("export.xlsx", result, target=Target(file=file), duration_ms=t.elapsed_ms)
    env.warnings = [WarningDetail(**w) for w in result["warnings"]]
    _emit(env)


# ---------------------------------------------------------------------------
# gridtpl serve --stdio
# ---------------------------------------------------------------------------
@app.command("serve")
def serve_cmd(
    stdio: Annotated[bool, typer.Option("--stdio", help="Use stdin/stdout for JSON request/response")] = True,
):
    """Start the stdio server; editing sessions (and undo/redo) persist per file.

    Each line is a JSON object: `{"id": "1", "command": "apply", "args": {"file": "report.json", "type": "column.add"}}`

    Commands: open, apply, undo, redo, history, hidden, widths, refs, document, save, close.

    Example: `gridtpl serve --stdio`
    """
    from gridtpl.server.stdio import StdioServer

    server = StdioServer(events=bool(_OPTIONS.get("events")))
    server.run()


# ---------------------------------------------------------------------------
# Entrypoint (for `python -m gridtpl`)
# ---------------------------------------------------------------------------
def main() -> None:
    try:
        app()
    except SystemExit:
        raise
    except Exception as exc:
        # Machine consumers always get an envelope, never a traceback.
        env = error_envelope("unknown", "ERR_INTERNAL", str(exc))
        print_response(env)
        raise SystemExit(90) from exc


if __name__ == "__main__":
    main()
