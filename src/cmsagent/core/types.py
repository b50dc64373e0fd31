from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Union

ROLES = ("system", "user", "assistant", "tool")
SUBGOAL_STATUSES = ("in_progress", "completed", "failed")


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class TextPart:
    text: str

    @property
    def type(self) -> str:
        return "text"


@dataclass(slots=True)
class ToolCallPart:
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return "tool-call"


@dataclass(slots=True)
class ToolResultPart:
    tool_call_id: str
    tool_name: str
    output: Any = None
    is_error: bool = False
    compacted_at: float | None = None
    original_tokens: int | None = None

    @property
    def type(self) -> str:
        return "tool-result"

    @property
    def is_compacted(self) -> bool:
        return self.compacted_at is not None


Part = Union[TextPart, ToolCallPart, ToolResultPart]


@dataclass(slots=True)
class Message:
    role: str
    parts: List[Part] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    tokens: int = 0
    is_summary: bool = False
    error: str | None = None

    @classmethod
    def from_text(cls, role: str, text: str, **kwargs: Any) -> "Message":
        return cls(role=role, parts=[TextPart(text=text)], **kwargs)

    @property
    def text(self) -> str:
        return "\n".join(part.text for part in self.parts if isinstance(part, TextPart))

    def tool_calls(self) -> list[ToolCallPart]:
        return [part for part in self.parts if isinstance(part, ToolCallPart)]

    def tool_results(self) -> list[ToolResultPart]:
        return [part for part in self.parts if isinstance(part, ToolResultPart)]

    def render(self) -> str:
        """Flatten the message into the plain text used for cheap size estimates."""
        if all(isinstance(part, TextPart) for part in self.parts):
            return self.text
        return json.dumps([part_to_dict(part) for part in self.parts], ensure_ascii=False)


@dataclass(slots=True)
class Subgoal:
    label: str
    status: str = "in_progress"
    summary: str = ""
    key_observations: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class MemoryState:
    working_memory: List[Message] = field(default_factory=list)
    subgoal_memory: List[Subgoal] = field(default_factory=list)


@dataclass(slots=True)
class Checkpoint:
    id: str
    session_id: str
    trace_id: str
    phase: str
    mode: str
    step_number: int
    max_steps: int
    messages: List[Message] = field(default_factory=list)
    working_memory: List[Message] = field(default_factory=list)
    subgoal_memory: List[Subgoal] = field(default_factory=list)
    current_subgoal: str | None = None
    completed_subgoals: List[str] = field(default_factory=list)
    pending_actions: List[str] = field(default_factory=list)
    last_tool_result: Any | None = None
    token_count: int = 0
    estimated_completion: float = 0.0
    created_at: float = field(default_factory=time.time)


def part_to_dict(part: Part) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ToolCallPart):
        return {
            "type": "tool-call",
            "tool_call_id": part.tool_call_id,
            "tool_name": part.tool_name,
            "input": part.input,
        }
    payload: dict[str, Any] = {
        "type": "tool-result",
        "tool_call_id": part.tool_call_id,
        "tool_name": part.tool_name,
        "output": part.output,
        "is_error": part.is_error,
    }
    if part.compacted_at is not None:
        payload["compacted_at"] = part.compacted_at
        payload["original_tokens"] = part.original_tokens
    return payload


def _require_str(payload: dict[str, Any], key: str, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{where} field '{key}' must be str")
    return value


def part_from_dict(payload: Any) -> Part:
    if not isinstance(payload, dict):
        raise ValueError("message part must be an object")
    kind = payload.get("type")
    if kind == "text":
        return TextPart(text=_require_str(payload, "text", "text part"))
    if kind == "tool-call":
        args = payload.get("input") or {}
        if not isinstance(args, dict):
            raise ValueError("tool-call part field 'input' must be an object")
        return ToolCallPart(
            tool_call_id=_require_str(payload, "tool_call_id", "tool-call part"),
            tool_name=_require_str(payload, "tool_name", "tool-call part"),
            input=args,
        )
    if kind == "tool-result":
        compacted_at = payload.get("compacted_at")
        original_tokens = payload.get("original_tokens")
        if compacted_at is not None and not isinstance(compacted_at, (int, float)):
            raise ValueError("tool-result part field 'compacted_at' must be a number")
        if original_tokens is not None and not isinstance(original_tokens, int):
            raise ValueError("tool-result part field 'original_tokens' must be int")
        return ToolResultPart(
            tool_call_id=_require_str(payload, "tool_call_id", "tool-result part"),
            tool_name=_require_str(payload, "tool_name", "tool-result part"),
            output=payload.get("output"),
            is_error=bool(payload.get("is_error", False)),
            compacted_at=float(compacted_at) if compacted_at is not None else None,
            original_tokens=original_tokens,
        )
    raise ValueError(f"unknown message part type: {kind!r}")


def message_to_dict(message: Message) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": message.id,
        "role": message.role,
        "parts": [part_to_dict(part) for part in message.parts],
        "created_at": message.created_at,
        "tokens": message.tokens,
    }
    if message.is_summary:
        payload["is_summary"] = True
    if message.error is not None:
        payload["error"] = message.error
    return payload


def message_from_dict(payload: Any) -> Message:
    if not isinstance(payload, dict):
        raise ValueError("message must be an object")
    role = payload.get("role")
    if role not in ROLES:
        raise ValueError(f"message role must be one of {', '.join(ROLES)}")
    parts = payload.get("parts")
    if not isinstance(parts, list):
        raise ValueError("message field 'parts' must be a list")
    created_at = payload.get("created_at", time.time())
    if not isinstance(created_at, (int, float)):
        raise ValueError("message field 'created_at' must be a number")
    error = payload.get("error")
    if error is not None and not isinstance(error, str):
        raise ValueError("message field 'error' must be str")
    return Message(
        role=role,
        parts=[part_from_dict(item) for item in parts],
        id=payload.get("id") or new_id(),
        created_at=float(created_at),
        tokens=int(payload.get("tokens") or 0),
        is_summary=bool(payload.get("is_summary", False)),
        error=error,
    )


def subgoal_to_dict(subgoal: Subgoal) -> dict[str, Any]:
    return {
        "label": subgoal.label,
        "status": subgoal.status,
        "summary": subgoal.summary,
        "key_observations": list(subgoal.key_observations),
        "created_at": subgoal.created_at,
    }


def subgoal_from_dict(payload: Any) -> Subgoal:
    if not isinstance(payload, dict):
        raise ValueError("subgoal must be an object")
    label = _require_str(payload, "label", "subgoal")
    status = payload.get("status", "in_progress")
    if status not in SUBGOAL_STATUSES:
        raise ValueError(f"subgoal status must be one of {', '.join(SUBGOAL_STATUSES)}")
    observations = payload.get("key_observations") or []
    if not isinstance(observations, list) or not all(
        isinstance(item, str) for item in observations
    ):
        raise ValueError("subgoal field 'key_observations' must be list[str]")
    return Subgoal(
        label=label,
        status=status,
        summary=payload.get("summary") or "",
        key_observations=list(observations),
        created_at=float(payload.get("created_at") or time.time()),
    )
