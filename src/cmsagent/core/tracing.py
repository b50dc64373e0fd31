from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class TraceEvent:
    ts: float
    kind: str
    data: dict[str, Any] = field(default_factory=dict)


class TraceWriter:
    def __init__(
        self, session_id: str, base_dir: Path | None = None, trace_id: str | None = None
    ) -> None:
        self.session_id = session_id
        self.base_dir = base_dir or Path("data") / "traces"
        self.trace_id = trace_id

    @property
    def path(self) -> Path:
        if self.trace_id is None:
            return self.base_dir / f"{self.session_id}.jsonl"
        return self.base_dir / f"{self.session_id}__{self.trace_id}.jsonl"

    def write(self, event: TraceEvent) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(asdict(event), ensure_ascii=False, default=str)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(payload + "\n")
        return self.path

    def emit(self, kind: str, **data: Any) -> Path:
        return self.write(TraceEvent(ts=time.time(), kind=kind, data=data))


class NullTraceWriter(TraceWriter):
    """Drops every event; used when a caller does not want traces on disk."""

    def write(self, event: TraceEvent) -> Path:
        return self.path
