"""Shared test fixtures."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from gridtpl.engine.projector import from_document
from gridtpl.engine.state import TemplateState


def _text(value: str, **extra: Any) -> dict[str, Any]:
    return {"type": "TEXT", "value": value, **extra}


def sales_document() -> dict[str, Any]:
    """Three columns, header/data/data/footer, formulas across rows."""
    return {
        "templateMeta": {"templateId": "sales-001", "pageSize": "A4", "pageOrientation": "portrait"},
        "reportMeta": {"reportName": "Sales by Region", "reportId": "rpt-1"},
        "reportData": {
            "columns": [
                {"id": "C__1", "name": "Region", "format": {"width": 200}},
                {"id": "C__2", "name": "Amount", "format": {"relativeWidth": 2, "align": "right"}},
                {"id": "C__3", "name": "Total"},
            ],
            "rows": [
                {"id": "R__1", "rowType": "HEADER", "cells": [
                    _text("Region", render={"bold": True}),
                    _text("Amount", render={"bold": True}),
                    _text("Total", render={"bold": True}),
                ]},
                {"id": "R__2", "rowType": "DATA", "cells": [
                    _text("North"),
                    {"type": "DB_SUM", "source": {"table": "sales", "column": "amount"}},
                    {"type": "FORMULA", "expression": "cell_R__2_C__2 * 2"},
                ]},
                {"id": "R__3", "rowType": "DATA", "cells": [
                    _text("South"),
                    {"type": "DB_VALUE", "source": {"table": "sales", "column": "amount"}},
                    {"type": "FORMULA", "expression": "cell_R__3_C__2 + cell_R__2_C__3"},
                ]},
                {"id": "R__4", "rowType": "FOOTER", "cells": [
                    _text("Total", render={"colspan": 2, "bold": True}),
                    _text(""),
                    {"type": "FORMULA", "expression": "cell_R__2_C__3 + cell_R__3_C__3"},
                ]},
            ],
        },
        "variants": [{"code": "EU", "name": "Europe"}],
    }


def grid_document(rows: int = 3, columns: int = 3) -> dict[str, Any]:
    """Plain TEXT grid with ids R__1.. and C__1.., no widths."""
    return {
        "reportData": {
            "columns": [{"id": f"C__{c + 1}", "name": f"Col {c + 1}"} for c in range(columns)],
            "rows": [
                {"id": f"R__{r + 1}", "rowType": "DATA",
                 "cells": [_text(f"r{r + 1}c{c + 1}") for c in range(columns)]}
                for r in range(rows)
            ],
        },
    }


CATALOG_YAML = """\
tables:
  - tableName: sales
    columns:
      - columnName: amount
        dataType: NUMBER
        selectable: Y
        filterable: Y
        aggFuncs: "SUM,AVG"
      - columnName: region
        dataType: STRING
        selectable: Y
        filterable: Y
      - columnName: internal_code
        selectable: N
"""


@pytest.fixture()
def state() -> TemplateState:
    """Normalized snapshot of the sales document."""
    return from_document(sales_document())


@pytest.fixture()
def grid() -> TemplateState:
    return from_document(grid_document())


@pytest.fixture()
def template_file(tmp_path: Path) -> Path:
    """The sales document written to disk."""
    path = tmp_path / "report.json"
    path.write_text(json.dumps(sales_document(), indent=2), encoding="utf-8")
    return path


@pytest.fixture()
def catalog_file(tmp_path: Path) -> Path:
    path = tmp_path / "tables.yaml"
    path.write_text(CATALOG_YAML, encoding="utf-8")
    return path


@pytest.fixture()
def sample_plan(template_file: Path) -> dict:
    """An edit plan that adds a column and renames it."""
    from gridtpl.io.fileops import fingerprint

    return {
        "schema_version": "1.0",
        "plan_id": "pln_test_001",
        "target": {
            "file": str(template_file),
            "fingerprint": fingerprint(template_file),
        },
        "options": {"backup": False, "fail_on_external_change": True},
        "operations": [
            {"op_id": "op_1", "type": "column.add"},
            {"op_id": "op_2", "type": "column.update", "index": 3, "patch": {"name": "Share"}},
        ],
    }


@pytest.fixture()
def sample_plan_file(tmp_path: Path, sample_plan: dict) -> Path:
    plan_path = tmp_path / "plan.json"
    plan_path.write_text(json.dumps(sample_plan))
    return plan_path
