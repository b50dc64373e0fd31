from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Iterable, Protocol, Union

from cmsagent.core.types import Message, Part, TextPart, ToolCallPart, ToolResultPart

ROLE_OVERHEAD = 4
COMPACTED_PLACEHOLDER = "[Output cleared]"
OVERFLOW_THRESHOLD = 0.9


class TokenCounter(Protocol):
    def count(self, text: str) -> int:
        ...


class HeuristicTokenCounter:
    """Roughly four characters per token; cheap and tokenizer-free."""

    def count(self, text: str) -> int:
        return math.ceil(len(text) / 4)


class TiktokenCounter:
    def __init__(self, encoding: str = "cl100k_base") -> None:
        import tiktoken

        self._encoding = tiktoken.get_encoding(encoding)

    def count(self, text: str) -> int:
        return len(self._encoding.encode(text, disallowed_special=()))


def build_counter(name: str) -> TokenCounter:
    key = name.lower()
    if key == "heuristic":
        return HeuristicTokenCounter()
    if key == "tiktoken":
        return TiktokenCounter()
    raise ValueError(f"Unknown tokenizer '{name}'. Available tokenizers: heuristic, tiktoken")


DEFAULT_COUNTER: TokenCounter = HeuristicTokenCounter()


def _dump(value: object) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def count_part_tokens(part: Part, counter: TokenCounter | None = None) -> int:
    counter = counter or DEFAULT_COUNTER
    if isinstance(part, TextPart):
        return counter.count(part.text)
    if isinstance(part, ToolCallPart):
        return counter.count(part.tool_name) + counter.count(_dump(part.input))
    if isinstance(part, ToolResultPart):
        if part.compacted_at is not None:
            return counter.count(COMPACTED_PLACEHOLDER)
        return counter.count(_dump(part.output))
    return 0


def count_message_tokens(message: Message, counter: TokenCounter | None = None) -> int:
    total = ROLE_OVERHEAD + sum(count_part_tokens(part, counter) for part in message.parts)
    message.tokens = total
    return total


def count_total_tokens(messages: Iterable[Message], counter: TokenCounter | None = None) -> int:
    return sum(count_message_tokens(message, counter) for message in messages)


@dataclass(frozen=True, slots=True)
class ModelLimits:
    context_limit: int
    max_output: int

    @property
    def usable(self) -> int:
        return self.context_limit - self.max_output

    def with_reserve(self, output_reserve: int | None) -> "ModelLimits":
        if output_reserve is None:
            return self
        return ModelLimits(context_limit=self.context_limit, max_output=output_reserve)


MODEL_LIMITS: dict[str, ModelLimits] = {
    "openai/gpt-4o": ModelLimits(128_000, 16_384),
    "openai/gpt-4o-mini": ModelLimits(128_000, 16_384),
    "openai/gpt-4-turbo": ModelLimits(128_000, 4_096),
    "openai/gpt-4": ModelLimits(8_192, 4_096),
    "openai/gpt-3.5-turbo": ModelLimits(16_385, 4_096),
    "openai/o1": ModelLimits(200_000, 100_000),
    "openai/o1-mini": ModelLimits(128_000, 65_536),
    "anthropic/claude-3.5-sonnet": ModelLimits(200_000, 8_192),
    "anthropic/claude-3-opus": ModelLimits(200_000, 4_096),
    "anthropic/claude-3-haiku": ModelLimits(200_000, 4_096),
    "google/gemini-pro": ModelLimits(32_000, 8_192),
    "google/gemini-1.5-pro": ModelLimits(1_000_000, 8_192),
    "google/gemini-2.0-flash-exp": ModelLimits(1_000_000, 8_192),
    "deepseek/deepseek-chat": ModelLimits(64_000, 8_192),
    "deepseek/deepseek-r1": ModelLimits(64_000, 8_192),
}
DEFAULT_LIMITS = ModelLimits(16_000, 4_096)

_FAMILY_FALLBACKS = (
    ("claude", "anthropic/claude-3.5-sonnet"),
    ("gpt-4", "openai/gpt-4o"),
    ("gemini", "google/gemini-1.5-pro"),
)


def get_model_limits(model_id: str) -> ModelLimits:
    limits = MODEL_LIMITS.get(model_id)
    if limits is not None:
        return limits
    # Longest prefix first so "openai/gpt-4o-mini-2024" does not land on "openai/gpt-4".
    for key in sorted(MODEL_LIMITS, key=len, reverse=True):
        if model_id.startswith(key):
            return MODEL_LIMITS[key]
    for needle, key in _FAMILY_FALLBACKS:
        if needle in model_id:
            return MODEL_LIMITS[key]
    return DEFAULT_LIMITS


ModelSpec = Union[str, ModelLimits]


def resolve_limits(model: ModelSpec, output_reserve: int | None = None) -> ModelLimits:
    limits = model if isinstance(model, ModelLimits) else get_model_limits(model)
    return limits.with_reserve(output_reserve)


def context_usage_percent(
    model: ModelSpec, current_tokens: int, output_reserve: int | None = None
) -> float:
    usable = resolve_limits(model, output_reserve).usable
    if usable <= 0:
        return 100.0
    return current_tokens / usable * 100


def is_approaching_overflow(
    model: ModelSpec,
    current_tokens: int,
    output_reserve: int | None = None,
    threshold: float = OVERFLOW_THRESHOLD,
) -> bool:
    return current_tokens > resolve_limits(model, output_reserve).usable * threshold


def available_tokens(
    model: ModelSpec, current_tokens: int, output_reserve: int | None = None
) -> int:
    return resolve_limits(model, output_reserve).usable - current_tokens
