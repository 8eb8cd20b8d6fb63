"""Policy engine: load and enforce gridtpl-policy.yaml rules."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from gridtpl.contracts.plans import Operation
from gridtpl.engine.state import TemplateState
from gridtpl.io.fileops import read_text_safe

POLICY_FILE_NAME = "gridtpl-policy.yaml"

_COLUMN_EDITS = ("column.remove", "column.update", "column.update_format")
_ROW_EDITS = ("row.remove", "row.update", "row.update_dynamic_config", "row.set_height")


class Policy:
    """Represents a loaded policy configuration."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        data = data or {}
        self.protected_columns: list[str] = list(data.get("protected_columns") or [])
        self.protected_rows: list[str] = list(data.get("protected_rows") or [])
        self.min_columns: int = int(data.get("min_columns", 1))
        self.require_reference_confirmation: bool = bool(
            data.get("require_reference_confirmation", True)
        )
        max_rows = data.get("max_rows")
        self.max_rows: int | None = int(max_rows) if max_rows is not None else None

    @classmethod
    def load(cls, path: str | Path) -> "Policy":
        """Load policy from a YAML file."""
        text = read_text_safe(path)
        data = yaml.safe_load(text) or {}
        return cls(data)

    @classmethod
    def load_from_dir(cls, directory: str | Path) -> "Policy | None":
        """Try to load gridtpl-policy.yaml from a directory. Returns None if not found."""
        path = Path(directory) / POLICY_FILE_NAME
        if path.exists():
            return cls.load(path)
        return None

    def is_protected_column(self, column_id: str, name: str = "") -> bool:
        return column_id in self.protected_columns or (bool(name) and name in self.protected_columns)

    def is_protected_row(self, row_id: str) -> bool:
        return row_id in self.protected_rows


def operation_column(state: TemplateState, op: Operation) -> tuple[int | None, str | None]:
    """Resolve the (index, id) of the column an operation targets."""
    if op.type == "column.remove":
        idx = state.column_index(op.column_id) if op.column_id else None
        if idx is None and op.index is not None and 0 <= op.index < len(state.columns):
            idx = op.index
    elif op.index is not None and 0 <= op.index < len(state.columns):
        idx = op.index
    else:
        idx = None
    return idx, (state.columns[idx].id if idx is not None else None)


def check_operation_policy(policy: Policy, state: TemplateState, op: Operation) -> list[dict[str, Any]]:
    """Policy violations of a single operation against the state it applies to."""
    violations: list[dict[str, Any]] = []
    if op.type in _COLUMN_EDITS:
        idx, column_id = operation_column(state, op)
        if column_id is not None and policy.is_protected_column(column_id, state.columns[idx].name):
            violations.append({
                "type": "protected_column",
                "severity": "error",
                "op_id": op.op_id,
                "message": f"Operation {op.op_id} targets protected column '{column_id}'",
            })
        if op.type == "column.remove" and column_id is not None and len(state.columns) - 1 < policy.min_columns:
            violations.append({
                "type": "min_columns",
                "severity": "error",
                "op_id": op.op_id,
                "message": f"Operation {op.op_id} would leave fewer than {policy.min_columns} column(s)",
            })
    elif op.type in _ROW_EDITS and op.row_id and policy.is_protected_row(op.row_id):
        violations.append({
            "type": "protected_row",
            "severity": "error",
            "op_id": op.op_id,
            "message": f"Operation {op.op_id} targets protected row '{op.row_id}'",
        })
    return violations


def check_row_limit(policy: Policy, state: TemplateState) -> list[dict[str, Any]]:
    if policy.max_rows is None or len(state.row_order) <= policy.max_rows:
        return []
    return [{
        "type": "max_rows",
        "severity": "error",
        "message": f"Template has {len(state.row_order)} rows, exceeding the limit of {policy.max_rows}",
    }]
