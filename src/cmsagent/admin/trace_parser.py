from __future__ import annotations

import json
from pathlib import Path
from typing import Any

_TOOL_KEYS = {"id", "step", "tool", "args", "ok", "error", "duration_ms"}


def _parse_line(line: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _empty_tool_call(tool_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": tool_id,
        "step": data.get("step"),
        "tool": data.get("tool"),
        "args": data.get("args"),
        "ok": None,
        "error": None,
        "duration_ms": None,
        "metadata": {},
    }


def _step_entry(steps: dict[int, dict[str, Any]], number: int) -> dict[str, Any]:
    return steps.setdefault(
        number,
        {
            "step": number,
            "llm_req": None,
            "llm_done": None,
            "compaction": None,
            "checkpoint": None,
            "tools": [],
        },
    )


def parse_trace_file(path: Path) -> dict[str, Any]:
    """Fold one turn's JSONL trace into per-step and per-tool views."""
    events: list[dict[str, Any]] = []
    steps: dict[int, dict[str, Any]] = {}
    tool_calls: dict[str, dict[str, Any]] = {}
    circuit_rejections: list[dict[str, Any]] = []
    checkpoint_errors: list[dict[str, Any]] = []
    turn_start: dict[str, Any] | None = None
    turn_done: dict[str, Any] | None = None

    if not path.exists():
        return {
            "events": [],
            "steps": [],
            "tool_calls": [],
            "circuit_rejections": [],
            "checkpoint_errors": [],
            "turn": None,
            "status": None,
            "final_response": None,
        }

    for line in path.read_text(encoding="utf-8").splitlines():
        payload = _parse_line(line)
        if payload is None:
            continue
        kind = payload.get("kind")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        event = {"ts": payload.get("ts"), "kind": kind, "data": data}
        events.append(event)
        number = data.get("step")

        if kind == "turn_start":
            turn_start = data
        elif kind == "turn_done":
            turn_done = data
        elif kind in {"llm_req", "llm_done", "compaction", "checkpoint"}:
            if isinstance(number, int):
                _step_entry(steps, number)[kind] = event
        elif kind == "circuit_open":
            circuit_rejections.append(data)
        elif kind == "checkpoint_error":
            checkpoint_errors.append(data)
        elif kind in {"tool_start", "tool_done"}:
            tool_id = data.get("id")
            if not isinstance(tool_id, str):
                continue
            entry = tool_calls.get(tool_id)
            if entry is None:
                entry = _empty_tool_call(tool_id, data)
                tool_calls[tool_id] = entry
                if isinstance(number, int):
                    _step_entry(steps, number)["tools"].append(tool_id)
            if kind == "tool_done":
                entry.update(
                    {
                        "ok": data.get("ok"),
                        "error": data.get("error"),
                        "duration_ms": data.get("duration_ms"),
                    }
                )
                metadata = {key: value for key, value in data.items() if key not in _TOOL_KEYS}
                if metadata:
                    entry["metadata"] = metadata

    return {
        "events": events,
        "steps": [steps[number] for number in sorted(steps)],
        "tool_calls": list(tool_calls.values()),
        "circuit_rejections": circuit_rejections,
        "checkpoint_errors": checkpoint_errors,
        "turn": turn_start,
        "status": turn_done.get("status") if turn_done else None,
        "final_response": turn_done.get("final_text") if turn_done else None,
    }
