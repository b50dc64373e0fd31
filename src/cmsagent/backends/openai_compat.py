from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from cmsagent.backends.registry import ModelRequest, ModelResponse, register_backend
from cmsagent.config import DEFAULT_MODEL, _env_bool, _env_float, _env_int
from cmsagent.core.errors import ModelCallError
from cmsagent.core.types import Message, ToolCallPart, new_id

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


def _dump(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def to_chat_messages(system_prompt: str, messages: list[Message]) -> list[dict[str, Any]]:
    chat: list[dict[str, Any]] = []
    if system_prompt:
        chat.append({"role": "system", "content": system_prompt})
    for message in messages:
        if message.role == "tool":
            for part in message.tool_results():
                chat.append(
                    {
                        "role": "tool",
                        "tool_call_id": part.tool_call_id,
                        "content": _dump(part.output),
                    }
                )
            continue
        entry: dict[str, Any] = {"role": message.role, "content": message.text}
        calls = message.tool_calls()
        if calls and message.role == "assistant":
            entry["tool_calls"] = [
                {
                    "id": call.tool_call_id,
                    "type": "function",
                    "function": {"name": call.tool_name, "arguments": _dump(call.input)},
                }
                for call in calls
            ]
        chat.append(entry)
    return chat


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_raw": raw}


def parse_chat_response(data: dict[str, Any]) -> ModelResponse:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ModelResponse(text="", finish_reason="empty")
    first = choices[0]
    message = first.get("message") if isinstance(first.get("message"), dict) else {}
    content = message.get("content")
    text = content if isinstance(content, str) else ""
    calls: list[ToolCallPart] = []
    for item in message.get("tool_calls") or []:
        if not isinstance(item, dict):
            continue
        function = item.get("function") or {}
        name = function.get("name")
        if not isinstance(name, str):
            continue
        calls.append(
            ToolCallPart(
                tool_call_id=str(item.get("id") or new_id()),
                tool_name=name,
                input=_parse_arguments(function.get("arguments")),
            )
        )
    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    finish = first.get("finish_reason")
    return ModelResponse(
        text=text,
        tool_calls=calls,
        finish_reason=finish if isinstance(finish, str) else ("tool_calls" if calls else "stop"),
        usage={key: value for key, value in usage.items() if isinstance(value, int)},
    )


@dataclass(slots=True)
class OpenAICompatBackend:
    """Chat-completions client for OpenAI-compatible servers (OpenRouter, llama.cpp, vLLM)."""

    base_url: str = field(
        default_factory=lambda: os.getenv("CMSAGENT_LLM_BASE_URL", "https://openrouter.ai/api")
    )
    api_key: str | None = field(default_factory=lambda: os.getenv("CMSAGENT_LLM_API_KEY"))
    model: str = field(default_factory=lambda: os.getenv("CMSAGENT_MODEL", DEFAULT_MODEL))
    timeout_s: float = field(default_factory=lambda: _env_float("CMSAGENT_LLM_TIMEOUT_S", 60.0))
    max_retries: int = field(default_factory=lambda: _env_int("CMSAGENT_LLM_RETRIES", 2))
    backoff_s: float = 1.0

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(self, request: ModelRequest) -> dict[str, Any]:
        options = dict(request.params)
        options.setdefault("temperature", 0)
        payload: dict[str, Any] = {
            "model": request.model or self.model,
            "messages": to_chat_messages(request.system_prompt, request.messages),
        }
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
        if request.max_output_tokens:
            payload["max_tokens"] = request.max_output_tokens
        payload.update(options)
        return payload

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/v1/chat/completions"
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(url, data=data, headers=self._headers(), method="POST")
        start = time.monotonic()
        with urllib.request.urlopen(request, timeout=self.timeout_s) as response:
            body = response.read().decode("utf-8")
        logger.debug("chat completion in %dms", int((time.monotonic() - start) * 1000))
        parsed = json.loads(body)
        if not isinstance(parsed, dict):
            raise ModelCallError("chat completion response must be an object")
        return parsed

    async def generate(self, request: ModelRequest) -> ModelResponse:
        payload = self.build_payload(request)
        if _env_bool("CMSAGENT_LOG_PAYLOAD"):
            logger.info("chat completion payload:\n%s", json.dumps(payload, indent=2))
        attempt = 0
        error: Exception
        while True:
            try:
                data = await asyncio.to_thread(self._post, payload)
                return parse_chat_response(data)
            except urllib.error.HTTPError as exc:
                if exc.code not in _RETRYABLE_STATUS or attempt >= self.max_retries:
                    raise ModelCallError(f"model call failed with HTTP {exc.code}") from exc
                error = exc
            except (urllib.error.URLError, TimeoutError) as exc:
                if attempt >= self.max_retries:
                    raise ModelCallError(f"model call failed: {exc}") from exc
                error = exc
            wait_s = min(self.backoff_s * 2**attempt, 10.0)
            logger.warning(
                "model call attempt %d failed (%s), retrying in %.1fs", attempt + 1, error, wait_s
            )
            attempt += 1
            await asyncio.sleep(wait_s)


def _factory(**kwargs: Any) -> OpenAICompatBackend:
    return OpenAICompatBackend(**kwargs)


register_backend("openai", _factory)
