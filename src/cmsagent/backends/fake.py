from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Union

from cmsagent.backends.registry import ModelRequest, ModelResponse, register_backend
from cmsagent.core.types import ToolCallPart, new_id

_TOOL_OUTPUT_TOKEN = "{{TOOL_OUTPUT}}"

ScriptedResponse = Union[ModelResponse, str, dict, BaseException]


@dataclass(slots=True)
class FakeBackend:
    """Replays scripted responses in order; an exception in the script is raised."""

    responses: List[ScriptedResponse] = field(default_factory=list)
    calls: List[ModelRequest] = field(default_factory=list)

    async def generate(self, request: ModelRequest) -> ModelResponse:
        self.calls.append(request)
        if not self.responses:
            return ModelResponse(text="", finish_reason="stop")
        scripted = self.responses.pop(0)
        if isinstance(scripted, BaseException):
            raise scripted
        response = coerce_response(scripted)
        return _render_response(response, request)

    def extend_responses(self, responses: Iterable[ScriptedResponse]) -> None:
        self.responses.extend(responses)

    def set_responses(self, responses: Iterable[ScriptedResponse]) -> None:
        self.responses = list(responses)


def tool_call(
    tool: str, args: dict[str, Any] | None = None, call_id: str | None = None
) -> ToolCallPart:
    return ToolCallPart(tool_call_id=call_id or new_id(), tool_name=tool, input=args or {})


def coerce_response(scripted: ModelResponse | str | dict) -> ModelResponse:
    if isinstance(scripted, ModelResponse):
        return scripted
    if isinstance(scripted, str):
        return ModelResponse(text=scripted)
    if not isinstance(scripted, dict):
        raise ValueError("fake responses must be strings or objects")
    calls_payload = scripted.get("tool_calls") or []
    if not isinstance(calls_payload, list):
        raise ValueError("fake response tool_calls must be a list")
    calls: list[ToolCallPart] = []
    for item in calls_payload:
        if not isinstance(item, dict) or not isinstance(item.get("tool"), str):
            raise ValueError("fake tool calls must be objects with a 'tool' name")
        args = item.get("args") or {}
        if not isinstance(args, dict):
            raise ValueError("fake tool call args must be an object")
        calls.append(tool_call(item["tool"], args, item.get("id")))
    text = scripted.get("text") or ""
    if not isinstance(text, str):
        raise ValueError("fake response text must be a string")
    finish = "tool_calls" if calls else "stop"
    return ModelResponse(text=text, tool_calls=calls, finish_reason=finish)


def _render_response(response: ModelResponse, request: ModelRequest) -> ModelResponse:
    if _TOOL_OUTPUT_TOKEN not in response.text:
        return response
    output = _last_tool_output(request)
    return ModelResponse(
        text=response.text.replace(_TOOL_OUTPUT_TOKEN, output),
        tool_calls=response.tool_calls,
        finish_reason=response.finish_reason,
        usage=response.usage,
    )


def _last_tool_output(request: ModelRequest) -> str:
    for message in reversed(request.messages):
        results = message.tool_results()
        if not results:
            continue
        output = results[-1].output
        if isinstance(output, str):
            return output.strip()
        if output is None:
            return ""
        return json.dumps(output, ensure_ascii=True)
    return ""


def _load_env_responses(env_value: str) -> list[ScriptedResponse]:
    data = json.loads(env_value)
    if not isinstance(data, list):
        raise ValueError("fake responses must be a JSON list")
    return [coerce_response(item) for item in data]


def _factory(**_kwargs: Any) -> FakeBackend:
    backend = FakeBackend()
    responses_json = os.getenv("CMSAGENT_FAKE_RESPONSES")
    if responses_json:
        backend.responses = _load_env_responses(responses_json)
    return backend


register_backend("fake", _factory)
