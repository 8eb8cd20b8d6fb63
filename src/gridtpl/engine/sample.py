"""Synthetic templates for demos and load testing."""

from __future__ import annotations

from datetime import date
from typing import Any

SAMPLE_COLUMNS: list[dict[str, Any]] = [
    {"id": "C__1", "name": "ID", "format": {"width": 100, "align": "center"}},
    {"id": "C__2", "name": "Name", "format": {"width": 200}},
    {"id": "C__3", "name": "Value", "format": {"width": 150, "align": "right",
                                               "valueFormatting": {"type": "number"}}},
    {"id": "C__4", "name": "Status", "format": {"width": 120}},
    {"id": "C__5", "name": "Date", "format": {"width": 150,
                                              "valueFormatting": {"type": "date"}}},
]


def sample_rows(count: int, column_count: int) -> list[dict[str, Any]]:
    """HEADER first, FOOTER last, DATA in between, all TEXT cells."""
    rows: list[dict[str, Any]] = []
    for i in range(count):
        if i == 0:
            row_type, label = "HEADER", "Header {col}"
        elif i == count - 1:
            row_type, label = "FOOTER", "Footer {col}"
        else:
            row_type, label = "DATA", f"Row {i + 1} Col {{col}}"
        rows.append({
            "id": f"R__{i + 1}",
            "rowType": row_type,
            "cells": [
                {"type": "TEXT", "value": label.format(col=c + 1)}
                for c in range(column_count)
            ],
        })
    return rows


def sample_document(row_count: int = 10000) -> dict[str, Any]:
    """A five-column template document with ``row_count`` rows."""
    return {
        "templateMeta": {
            "templateId": "sample-template",
            "version": 1,
            "pageSize": "A4",
            "pageOrientation": "portrait",
            "description": f"Sample template with {row_count} rows",
        },
        "reportMeta": {
            "reportName": f"Sample Report ({row_count} rows)",
            "reportId": "sample-001",
            "extras": [
                {"name": "Report Date", "value": date.today().isoformat()},
                {"name": "Row Count", "value": str(row_count)},
            ],
        },
        "reportData": {
            "columns": SAMPLE_COLUMNS,
            "rows": sample_rows(row_count, len(SAMPLE_COLUMNS)),
        },
        "variants": [],
    }
