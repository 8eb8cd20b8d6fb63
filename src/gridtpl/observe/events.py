"""Lifecycle events, timing and plan traces for template sessions."""

from __future__ import annotations

import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO

import orjson

from gridtpl.contracts.common import ChangeRecord

TRACE_VERSION = "1.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Timer:
    """Context-manager timer.

    ``elapsed_ms`` fills ``metrics.duration_ms``; ``elapsed`` keeps the raw
    seconds for spans shorter than a millisecond.
    """

    def __init__(self) -> None:
        self.start: float = 0
        self.elapsed: float = 0.0

    def __enter__(self) -> "Timer":
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed = time.perf_counter() - self.start

    @property
    def elapsed_ms(self) -> int:
        return int(self.elapsed * 1000)


class EventEmitter:
    """Writes one NDJSON line per lifecycle event (stderr unless told otherwise).

    Event names: ``template.loaded``, ``template.saved``, ``mutation.applied``,
    ``mutation.skipped``, ``history.undo``, ``history.redo``. ``seq`` numbers
    the lines of one emitter from 1.
    """

    def __init__(self, enabled: bool = False, stream: TextIO | None = None) -> None:
        self.enabled = enabled
        self.stream = stream
        self.count = 0

    def emit(self, event: str, data: dict[str, Any] | None = None) -> None:
        if not self.enabled:
            return
        self.count += 1
        payload = {"event": event, "seq": self.count, "timestamp": _now(), "data": data or {}}
        out = self.stream or sys.stderr
        out.write(orjson.dumps(payload, default=str).decode() + "\n")
        out.flush()


class TraceRecorder:
    """Outcome and timing of each operation while a plan is applied.

    ``gridtpl apply --trace`` saves it as JSON: the plan's file and id, one
    entry per operation in plan order (``op_id``, ``type``, ``changed``,
    ``elapsed_ms`` and, for changed ones, the ``target`` and any warning
    codes) and the totals.
    """

    def __init__(self, file: str | Path | None = None, plan_id: str = "") -> None:
        self.file = str(file) if file is not None else None
        self.plan_id = plan_id
        self.operations: list[dict[str, Any]] = []
        self._start = time.perf_counter()

    def record(self, op_id: str | None, kind: str, change: ChangeRecord | None, elapsed: float) -> None:
        entry: dict[str, Any] = {
            "op_id": op_id,
            "type": kind,
            "changed": change is not None,
            "elapsed_ms": round(elapsed * 1000, 3),
        }
        if change is not None:
            entry["target"] = change.target
            if change.warnings:
                entry["warnings"] = [w.code for w in change.warnings]
        self.operations.append(entry)

    @property
    def skipped(self) -> list[str | None]:
        """Op ids of operations that left the template unchanged."""
        return [e["op_id"] for e in self.operations if not e["changed"]]

    def to_dict(self, **outcome: Any) -> dict[str, Any]:
        """The trace document; ``outcome`` adds command results such as fingerprints."""
        return {
            "trace_version": TRACE_VERSION,
            "generated_at": _now(),
            "file": self.file,
            "plan_id": self.plan_id or None,
            "total_ms": round((time.perf_counter() - self._start) * 1000, 3),
            "operations_applied": len(self.operations) - len(self.skipped),
            "operations_skipped": self.skipped,
            **outcome,
            "operations": self.operations,
        }

    def save(self, path: str | Path, **outcome: Any) -> str:
        """Write the trace as JSON. Returns the path."""
        trace_path = Path(path)
        trace_path.write_bytes(orjson.dumps(self.to_dict(**outcome), option=orjson.OPT_INDENT_2))
        return str(trace_path)
