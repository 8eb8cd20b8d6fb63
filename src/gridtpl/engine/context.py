"""TemplateContext: loads a template file, provides metadata, fingerprint and a session."""

from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import Any

import orjson
from pydantic import ValidationError

from gridtpl.contracts.common import ChangeRecord, Target, TemplateCorruptError
from gridtpl.contracts.plans import EditPlan
from gridtpl.contracts.responses import ColumnMeta, TemplateSummary
from gridtpl.contracts.template import FormulaCell
from gridtpl.engine.history import TemplateSession
from gridtpl.engine.projector import from_document, to_document
from gridtpl.engine.sample import sample_document
from gridtpl.engine.state import TemplateState, initial_state, table_names
from gridtpl.io.fileops import atomic_write, fingerprint, read_text_safe
from gridtpl.observe.events import EventEmitter, Timer, TraceRecorder


def encode_document(state: TemplateState) -> bytes:
    return orjson.dumps(to_document(state), option=orjson.OPT_INDENT_2)


class TemplateContext:
    """Wraps a template file with an editing session and helper methods."""

    @classmethod
    def create(
        cls,
        path: str | Path,
        *,
        template_id: str | None = None,
        report_name: str | None = None,
        sample_rows: int = 0,
        emitter: EventEmitter | None = None,
    ) -> "TemplateContext":
        """Create a new template file. Raises FileExistsError if path exists."""
        p = Path(path).resolve()
        if p.exists():
            raise FileExistsError(f"File already exists: {p}")
        state = from_document(sample_document(sample_rows)) if sample_rows > 0 else initial_state()
        if template_id:
            state = state.model_copy(update={
                "template_meta": state.template_meta.model_copy(update={"template_id": template_id}),
            })
        if report_name:
            state = state.model_copy(update={
                "report_meta": state.report_meta.model_copy(update={"report_name": report_name}),
            })
        atomic_write(p, encode_document(state))
        return cls(p, emitter=emitter)

    def __init__(self, path: str | Path, *, emitter: EventEmitter | None = None) -> None:
        self.path = Path(path).resolve()
        if not self.path.exists():
            raise FileNotFoundError(f"Template not found: {self.path}")
        self.fp = fingerprint(self.path)
        self.emitter = emitter or EventEmitter(enabled=False)
        try:
            data = json.loads(read_text_safe(self.path))
            state = from_document(data)
        except (ValueError, ValidationError) as e:
            raise TemplateCorruptError(f"Cannot open template {self.path}: {e}") from e
        self.session = TemplateSession(state, emitter=self.emitter)
        self.emitter.emit("template.loaded", {
            "file": str(self.path),
            "rows": len(state.row_order),
            "columns": len(state.columns),
        })

    @property
    def state(self) -> TemplateState:
        return self.session.state

    def target(self, **overrides: str | None) -> Target:
        t = Target(file=str(self.path))
        for k, v in overrides.items():
            if v is not None:
                setattr(t, k, v)
        return t

    def get_summary(self) -> TemplateSummary:
        state = self.state
        formula_count = sum(1 for c in state.cells.values() if isinstance(c, FormulaCell))
        return TemplateSummary(
            path=str(self.path),
            fingerprint=self.fp,
            template_id=state.template_meta.template_id,
            report_name=state.report_meta.report_name,
            page_size=state.template_meta.page_size,
            page_orientation=state.template_meta.page_orientation,
            columns=[
                ColumnMeta(
                    id=col.id, name=col.name, index=idx,
                    width=col.format.width, relative_width=col.format.relative_width,
                )
                for idx, col in enumerate(state.columns)
            ],
            row_count=len(state.row_order),
            rows_by_type=dict(Counter(row.row_type for row in state.rows.values())),
            cell_count=len(state.cells),
            merged_cell_count=len(state.merged),
            formula_cell_count=formula_count,
            tables=table_names(state),
            variants=[v.code for v in state.variants],
        )

    def apply(self, kind: str, **payload: Any) -> ChangeRecord | None:
        return self.session.apply(kind, **payload)

    def apply_plan(self, plan: EditPlan, *, trace: TraceRecorder | None = None) -> list[ChangeRecord]:
        """Apply every operation in order. No-op operations produce no record.

        All-or-nothing: if an operation raises, the session is rolled back to
        the state it had before the plan and the error propagates.
        """
        start_state = self.session.state
        past, future = list(self.session.past), list(self.session.future)
        changes: list[ChangeRecord] = []
        try:
            for op in plan.operations:
                with Timer() as t:
                    record = self.session.apply(op.type, op_id=op.op_id, **op.payload())
                if trace is not None:
                    trace.record(op.op_id, op.type, record, t.elapsed)
                if record is not None:
                    changes.append(record)
        except Exception:
            self.session.state = start_state
            self.session.past.clear()
            self.session.past.extend(past)
            self.session.future.clear()
            self.session.future.extend(future)
            raise
        return changes

    def to_bytes(self) -> bytes:
        return encode_document(self.state)

    def save(self, path: str | Path | None = None) -> bytes:
        """Serialize the current snapshot and write it atomically."""
        data = self.to_bytes()
        dest = Path(path).resolve() if path else self.path
        atomic_write(dest, data)
        if dest == self.path:
            self.fp = fingerprint(self.path)
        self.emitter.emit("template.saved", {"file": str(dest), "bytes": len(data)})
        return data
