"""Command dispatch and response envelope helpers."""

from __future__ import annotations

import sys
from collections import Counter
from typing import Any

import orjson

from gridtpl.contracts.common import (
    ChangeRecord,
    ErrorDetail,
    Metrics,
    ResponseEnvelope,
    Target,
)
from gridtpl.contracts.responses import DryRunSummary

EXIT_INTERNAL = 90

ERROR_EXIT_CODES: dict[str, int] = {
    # 10: the request or template is invalid
    "ERR_VALIDATION_FAILED": 10,
    "ERR_PLAN_INVALID": 10,
    "ERR_INVALID_ARGUMENT": 10,
    "ERR_LAST_COLUMN": 10,
    # 20: policy protection
    "ERR_PROTECTED_COLUMN": 20,
    "ERR_PROTECTED_ROW": 20,
    # 30: formulas still point at the target
    "ERR_REFERENCES_EXIST": 30,
    # 40: the file changed since the plan was made
    "ERR_PLAN_FINGERPRINT_CONFLICT": 40,
    # 50: file system
    "ERR_TEMPLATE_NOT_FOUND": 50,
    "ERR_TEMPLATE_CORRUPT": 50,
    "ERR_FILE_EXISTS": 50,
    "ERR_LOCK_HELD": 50,
    "ERR_IO": 50,
    "ERR_INTERNAL": EXIT_INTERNAL,
}


def success_envelope(
    command: str,
    result: Any,
    *,
    target: Target | None = None,
    changes: list | None = None,
    warnings: list | None = None,
    duration_ms: int = 0,
) -> ResponseEnvelope:
    return ResponseEnvelope(
        ok=True,
        command=command,
        target=target or Target(),
        result=result,
        changes=changes or [],
        warnings=warnings or [],
        metrics=Metrics(duration_ms=duration_ms),
    )


def error_envelope(
    command: str,
    code: str,
    message: str,
    *,
    target: Target | None = None,
    details: dict | None = None,
    duration_ms: int = 0,
) -> ResponseEnvelope:
    return ResponseEnvelope(
        ok=False,
        command=command,
        target=target or Target(),
        errors=[ErrorDetail(code=code, message=message, details=details)],
        metrics=Metrics(duration_ms=duration_ms),
    )


def summarize_changes(changes: list[ChangeRecord]) -> dict:
    """Dry-run summary: counts per mutation kind and cells touched."""
    operations = [
        {
            "op_id": change.op_id,
            "type": change.type,
            "target": change.target,
            "cells": abs((change.impact or {}).get("cells", 0)),
        }
        for change in changes
    ]
    return DryRunSummary(
        total_operations=len(changes),
        total_cells_affected=sum(op["cells"] for op in operations),
        by_type=dict(Counter(change.type for change in changes)),
        operations=operations,
    ).model_dump()


def print_response(envelope: ResponseEnvelope) -> None:
    """Write the envelope to stdout as indented JSON."""
    payload = orjson.dumps(envelope.model_dump(mode="json"), option=orjson.OPT_INDENT_2)
    sys.stdout.write(payload.decode() + "\n")


def exit_code_for(envelope: ResponseEnvelope) -> int:
    """Exit code for the first error; unknown codes count as internal."""
    if envelope.ok:
        return 0
    if not envelope.errors:
        return EXIT_INTERNAL
    return ERROR_EXIT_CODES.get(envelope.errors[0].code.upper(), EXIT_INTERNAL)
