"""stdio server mode: JSON line-delimited protocol over stdin/stdout.

Sessions stay open per file between requests, so ``undo``/``redo`` work
across calls. Nothing is written to disk until ``save``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, TextIO

from gridtpl.contracts.plans import Operation
from gridtpl.engine.context import TemplateContext
from gridtpl.engine.projector import to_document
from gridtpl.engine.references import find_column_references, find_row_references
from gridtpl.engine.widths import export_widths, screen_widths
from gridtpl.observe.events import EventEmitter


class StdioServer:
    """Simple JSON-RPC-like server over stdin/stdout."""

    def __init__(self, *, events: bool = False) -> None:
        self._contexts: dict[str, TemplateContext] = {}
        self.emitter = EventEmitter(enabled=events)

    def _key(self, file: str) -> str:
        return str(Path(file).resolve())

    def _get_ctx(self, file: str) -> TemplateContext:
        key = self._key(file)
        if key not in self._contexts:
            self._contexts[key] = TemplateContext(file, emitter=self.emitter)
        return self._contexts[key]

    def _close(self, file: str | None) -> int:
        if file:
            return 1 if self._contexts.pop(self._key(file), None) is not None else 0
        count = len(self._contexts)
        self._contexts.clear()
        return count

    def _apply(self, ctx: TemplateContext, args: dict[str, Any]) -> Any:
        ops = args.get("operations")
        if ops is None:
            ops = [{"op_id": args.get("op_id", "op1"), **{k: v for k, v in args.items() if k != "file"}}]
        records = []
        for raw in ops:
            op = Operation.model_validate(raw)
            record = ctx.apply(op.type, op_id=op.op_id, **op.payload())
            if record is not None:
                records.append(record.model_dump())
        return {"changes": records, "history": ctx.session.history_info().model_dump()}

    def _refs(self, ctx: TemplateContext, args: dict[str, Any]) -> Any:
        if args.get("row_id"):
            refs = find_row_references(ctx.state, args["row_id"])
        elif args.get("column_id"):
            refs = find_column_references(ctx.state, args["column_id"])
        else:
            raise ValueError("refs needs 'row_id' or 'column_id'")
        return [r.model_dump() for r in refs]

    def _widths(self, ctx: TemplateContext, args: dict[str, Any]) -> Any:
        state = ctx.state
        if args.get("mode", "screen") == "export":
            meta = state.template_meta
            return export_widths(
                state.columns,
                args.get("page_size", meta.page_size),
                args.get("orientation", meta.page_orientation),
            )
        return screen_widths(state.columns, int(args.get("container_width", 1200)))

    def handle_request(self, request: dict[str, Any]) -> dict[str, Any]:
        req_id = request.get("id", "")
        command = request.get("command", "")
        args = request.get("args", {}) or {}

        try:
            if command == "close":
                closed = self._close(args.get("file"))
                return {"id": req_id, "ok": True, "result": {"closed": closed}}

            file = args.get("file", "")
            if not file:
                return {"id": req_id, "ok": False, "error": "Missing 'file' in args"}
            ctx = self._get_ctx(file)

            if command == "open":
                result: Any = ctx.get_summary().model_dump()
            elif command == "apply":
                result = self._apply(ctx, args)
            elif command == "undo":
                result = {"undone": ctx.session.undo(), "history": ctx.session.history_info().model_dump()}
            elif command == "redo":
                result = {"redone": ctx.session.redo(), "history": ctx.session.history_info().model_dump()}
            elif command == "history":
                result = ctx.session.history_info().model_dump()
            elif command == "hidden":
                result = [{"row_id": r, "cell_id": c} for r, c in sorted(ctx.session.hidden_cells())]
            elif command == "widths":
                result = self._widths(ctx, args)
            elif command == "refs":
                result = self._refs(ctx, args)
            elif command == "document":
                result = to_document(ctx.state)
            elif command == "save":
                ctx.save(args.get("output"))
                result = {"file": str(ctx.path), "fingerprint": ctx.fp}
            else:
                return {"id": req_id, "ok": False, "error": f"Unknown command: {command}"}
            return {"id": req_id, "ok": True, "result": result}

        except Exception as e:
            return {"id": req_id, "ok": False, "error": f"{type(e).__name__}: {e}"}

    def run(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        """Main server loop: read JSON lines from stdin, write responses to stdout."""
        stdin = stdin or sys.stdin
        stdout = stdout or sys.stdout
        for line in stdin:
            line = line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
            except json.JSONDecodeError as e:
                response = {"ok": False, "error": f"Invalid JSON: {e}"}
                stdout.write(json.dumps(response) + "\n")
                stdout.flush()
                continue

            response = self.handle_request(request)
            stdout.write(json.dumps(response, default=str) + "\n")
            stdout.flush()

        self._close(None)
