"""Editing session with bounded undo/redo over immutable snapshots."""

from __future__ import annotations

from collections import deque
from typing import Any

from gridtpl.contracts.common import ChangeRecord
from gridtpl.contracts.responses import HistoryInfo
from gridtpl.engine.mutations import apply_mutation
from gridtpl.engine.spans import HiddenSet, SpanResolver
from gridtpl.engine.state import TemplateState, initial_state
from gridtpl.observe.events import EventEmitter

HISTORY_LIMIT = 50

UNDOABLE_MUTATIONS = frozenset({
    "column.add",
    "column.remove",
    "column.update",
    "column.update_format",
    "row.add",
    "row.remove",
    "row.update",
    "row.reorder",
    "row.set_height",
    "row.update_dynamic_config",
    "cell.update",
    "cell.update_render",
    "cell.update_format",
    "cell.update_source",
})

# Wholesale replacement starts a fresh history.
RESETTING_MUTATIONS = frozenset({"template.set", "template.reset"})


def _target_of(payload: dict[str, Any]) -> str:
    for key in ("cell_id", "row_id", "column_id"):
        if payload.get(key):
            return str(payload[key])
    for key in ("index", "from_index", "insert_at"):
        if payload.get(key) is not None:
            return f"#{payload[key]}"
    return "template"


def _impact(before: TemplateState, after: TemplateState) -> dict[str, int]:
    return {
        "columns": len(after.columns) - len(before.columns),
        "rows": len(after.rows) - len(before.rows),
        "cells": len(after.cells) - len(before.cells),
    }


class TemplateSession:
    """Holds the current snapshot plus ``past``/``future`` stacks.

    Only kinds in ``UNDOABLE_MUTATIONS`` record history. Snapshots are the
    immutable state objects themselves, so pushing one costs nothing beyond
    the reference.
    """

    def __init__(
        self,
        state: TemplateState | None = None,
        *,
        limit: int = HISTORY_LIMIT,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.state = state if state is not None else initial_state()
        self.past: deque[TemplateState] = deque(maxlen=limit)
        self.future: deque[TemplateState] = deque(maxlen=limit)
        self.spans = SpanResolver()
        self.emitter = emitter or EventEmitter(enabled=False)

    def apply(self, kind: str, op_id: str | None = None, **payload: Any) -> ChangeRecord | None:
        """Run one mutation. Returns a change record, or None for a no-op."""
        before = self.state
        after = apply_mutation(before, kind, **payload)
        if after is before:
            self.emitter.emit("mutation.skipped", {"type": kind, "target": _target_of(payload)})
            return None

        if kind in UNDOABLE_MUTATIONS:
            self.past.append(before)
            self.future.clear()
        elif kind in RESETTING_MUTATIONS:
            self.past.clear()
            self.future.clear()
        self.state = after

        record = ChangeRecord(
            op_id=op_id,
            type=kind,
            target=_target_of(payload),
            impact=_impact(before, after),
        )
        self.emitter.emit("mutation.applied", {
            "type": kind,
            "target": record.target,
            "undoable": kind in UNDOABLE_MUTATIONS,
            **record.impact,
        })
        return record

    def undo(self) -> bool:
        if not self.past:
            return False
        self.future.append(self.state)
        self.state = self.past.pop()
        self.emitter.emit("history.undo", {"past": len(self.past), "future": len(self.future)})
        return True

    def redo(self) -> bool:
        if not self.future:
            return False
        self.past.append(self.state)
        self.state = self.future.pop()
        self.emitter.emit("history.redo", {"past": len(self.past), "future": len(self.future)})
        return True

    @property
    def can_undo(self) -> bool:
        return bool(self.past)

    @property
    def can_redo(self) -> bool:
        return bool(self.future)

    def history_info(self) -> HistoryInfo:
        return HistoryInfo(
            past=len(self.past),
            future=len(self.future),
            can_undo=self.can_undo,
            can_redo=self.can_redo,
        )

    def hidden_cells(self) -> HiddenSet:
        return self.spans.resolve(self.state)

    def is_hidden(self, row_id: str, cell_id: str) -> bool:
        return self.spans.is_hidden(self.state, row_id, cell_id)
