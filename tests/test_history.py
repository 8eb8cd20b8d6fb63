"""Tests for the editing session: undo/redo and lifecycle events."""

from __future__ import annotations

import io
import json

from gridtpl.engine.history import HISTORY_LIMIT, UNDOABLE_MUTATIONS, TemplateSession
from gridtpl.observe.events import EventEmitter


def test_undo_redo_on_empty_stacks_are_noops(state):
    session = TemplateSession(state)
    assert session.undo() is False
    assert session.redo() is False
    assert session.state is state


def test_undo_then_redo_restores_exactly(state):
    session = TemplateSession(state)
    session.apply("column.add")
    after = session.state
    assert session.undo() is True
    assert session.state is state
    assert session.redo() is True
    assert session.state is after


def test_new_mutation_clears_future(state):
    session = TemplateSession(state)
    session.apply("column.add")
    session.undo()
    assert session.can_redo
    session.apply("row.reorder", from_index=0, to_index=1)
    assert not session.can_redo


def test_noop_records_nothing(state):
    session = TemplateSession(state)
    record = session.apply("row.remove", row_id="R__99")
    assert record is None
    assert not session.can_undo


def test_change_record(state):
    session = TemplateSession(state)
    record = session.apply("row.remove", op_id="op1", row_id="R__2")
    assert record.op_id == "op1"
    assert record.type == "row.remove"
    assert record.target == "R__2"
    assert record.impact == {"columns": 0, "rows": -1, "cells": -3}


def test_history_is_bounded(grid):
    session = TemplateSession(grid)
    for i in range(HISTORY_LIMIT + 5):
        session.apply("column.update", index=0, patch={"name": f"n{i}"})
    assert len(session.past) == HISTORY_LIMIT
    # the five oldest snapshots were dropped
    assert session.past[0].columns[0].name == "n4"


def test_non_undoable_kinds_do_not_snapshot(state):
    session = TemplateSession(state)
    session.apply("ui.select_cell", row_id="R__1")
    session.apply("template.update_meta", patch={"description": "x"})
    session.apply("variant.add", variant={"code": "US"})
    assert not session.can_undo
    assert session.state.selected_cell.row_id == "R__1"


def test_template_set_clears_history(state, grid):
    from gridtpl.engine.projector import to_document

    session = TemplateSession(state)
    session.apply("column.add")
    session.apply("column.add")
    session.undo()
    session.apply("template.set", document=to_document(grid))
    assert not session.can_undo
    assert not session.can_redo


def test_history_info(state):
    session = TemplateSession(state)
    session.apply("column.add")
    info = session.history_info()
    assert info.past == 1
    assert info.future == 0
    assert info.can_undo is True
    assert info.can_redo is False


def test_undoable_kinds():
    assert len(UNDOABLE_MUTATIONS) == 14
    assert "ui.select_cell" not in UNDOABLE_MUTATIONS
    assert "template.set" not in UNDOABLE_MUTATIONS


def test_hidden_cells_follow_undo(grid):
    session = TemplateSession(grid)
    anchor = grid.rows["R__1"].cell_ids[0]
    session.apply("cell.update_render", cell_id=anchor, patch={"colspan": 2})
    assert session.is_hidden("R__1", grid.rows["R__1"].cell_ids[1])
    session.undo()
    assert session.hidden_cells() == frozenset()


def test_events_emitted(state):
    stream = io.StringIO()
    session = TemplateSession(state, emitter=EventEmitter(enabled=True, stream=stream))
    session.apply("column.add")
    session.apply("row.remove", row_id="missing")
    session.undo()
    session.redo()
    events = [json.loads(line)["event"] for line in stream.getvalue().splitlines()]
    assert events == ["mutation.applied", "mutation.skipped", "history.undo", "history.redo"]


def test_events_disabled_by_default(state):
    stream = io.StringIO()
    emitter = EventEmitter(stream=stream)
    session = TemplateSession(state, emitter=emitter)
    session.apply("column.add")
    assert stream.getvalue() == ""
    assert emitter.count == 0
