"""Tests for document export and import."""

from __future__ import annotations

from gridtpl.engine.mutations import apply_mutation
from gridtpl.engine.projector import from_document, to_document
from gridtpl.engine.sample import sample_document


def test_document_shape(state):
    doc = to_document(state)
    assert set(doc) == {"templateMeta", "reportMeta", "reportData", "variants"}
    assert doc["templateMeta"]["templateId"] == "sales-001"
    assert doc["reportMeta"]["reportName"] == "Sales by Region"
    assert [c["id"] for c in doc["reportData"]["columns"]] == ["C__1", "C__2", "C__3"]
    assert [r["id"] for r in doc["reportData"]["rows"]] == ["R__1", "R__2", "R__3", "R__4"]


def test_cells_are_sparse(state):
    rows = to_document(state)["reportData"]["rows"]
    header, data, _, footer = rows
    assert header["cells"][0] == {"type": "TEXT", "value": "Region", "render": {"bold": True}}
    assert data["cells"][1] == {"type": "DB_SUM", "source": {"table": "sales", "column": "amount"}}
    assert footer["cells"][0]["render"] == {"bold": True, "colspan": 2}
    assert all("id" not in c for r in rows for c in r["cells"])
    assert "height" not in header


def test_dynamic_rows_carry_config_only(grid):
    s = apply_mutation(grid, "row.add", row={"id": "D", "rowType": "DYNAMIC", "dynamicConfig": {"table": "sales"}})
    s = apply_mutation(s, "row.update", row_id="D", patch={"height": 40})
    entry = to_document(s)["reportData"]["rows"][-1]
    assert "cells" not in entry
    assert entry["dynamicConfig"]["table"] == "sales"
    assert entry["dynamicConfig"]["sourceType"] == "DB_LIST"
    assert entry["height"] == 40


def test_document_survives_reload(state):
    doc = to_document(state)
    assert to_document(from_document(doc)) == doc


def test_from_document_assigns_missing_and_duplicate_ids():
    s = from_document({
        "reportData": {
            "columns": [{"id": "C__3", "name": "a"}, {"name": "b"}, {"id": "C__3", "name": "c"}],
            "rows": [{"id": "R__1"}, {"id": "R__1"}, {}],
        },
    })
    assert [c.id for c in s.columns] == ["C__3", "C__4", "C__5"]
    assert s.row_order == ("R__1", "R__2", "R__3")
    assert len(s.cells) == 9


def test_from_document_pads_and_truncates():
    s = from_document({
        "reportData": {
            "columns": [{"id": "A"}, {"id": "B"}],
            "rows": [
                {"id": "short", "cells": [{"value": "1"}]},
                {"id": "long", "cells": [{"value": "1"}, {"value": "2"}, {"value": "3"}]},
                {"id": "dyn", "rowType": "DYNAMIC", "cells": [{"value": "ignored"}]},
            ],
        },
    })
    assert len(s.rows["short"].cell_ids) == 2
    assert [c.value for c in s.row_cells("long")] == ["1", "2"]
    assert s.rows["dyn"].cell_ids == ()
    assert s.rows["dyn"].dynamic_config is not None


def test_from_document_reindexes_merged(state):
    assert len(state.merged) == 1


def test_from_document_empty():
    s = from_document(None)
    assert s.columns == ()
    assert s.row_order == ()


def test_sample_document():
    s = from_document(sample_document(6))
    types = [s.rows[r].row_type for r in s.row_order]
    assert types == ["HEADER", "DATA", "DATA", "DATA", "DATA", "FOOTER"]
    assert len(s.columns) == 5
    assert s.row_cells("R__2")[1].value == "Row 2 Col 2"
