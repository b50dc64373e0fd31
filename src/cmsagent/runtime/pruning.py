from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from typing import Iterator, List

from cmsagent.core.types import Message, ToolResultPart
from cmsagent.runtime.tokens import (
    COMPACTED_PLACEHOLDER,
    DEFAULT_COUNTER,
    OVERFLOW_THRESHOLD,
    TokenCounter,
    count_part_tokens,
)

PRUNED_MARKER = "[Tool output cleared - see conversation summary]"


@dataclass(frozen=True, slots=True)
class CompactionConfig:
    prune_minimum: int = 20_000
    prune_protect: int = 40_000
    # None reserves the model's own max output.
    output_reserve: int | None = None
    min_turns_to_keep: int = 2
    overflow_threshold: float = OVERFLOW_THRESHOLD
    compaction_ceiling: float = 0.95


DEFAULT_COMPACTION_CONFIG = CompactionConfig()


@dataclass(slots=True)
class PruneEstimate:
    total_tool_tokens: int = 0
    prunable_tokens: int = 0
    outputs_count: int = 0


@dataclass(slots=True)
class PruneResult:
    messages: List[Message]
    outputs_pruned: int = 0
    tokens_saved: int = 0
    pruned_tools: List[str] = field(default_factory=list)


def _older_tool_results(
    messages: list[Message], config: CompactionConfig
) -> Iterator[ToolResultPart]:
    """Tool results outside the protected recent turns, newest first."""
    turns = 0
    for message in reversed(messages):
        if message.role == "user":
            turns += 1
        if turns < config.min_turns_to_keep:
            continue
        if message.role == "assistant" and message.is_summary:
            return
        if message.role not in ("assistant", "tool"):
            continue
        for part in reversed(message.parts):
            if isinstance(part, ToolResultPart):
                yield part


def _plan(
    messages: list[Message], config: CompactionConfig, counter: TokenCounter
) -> tuple[list[tuple[ToolResultPart, int]], PruneEstimate]:
    placeholder = counter.count(COMPACTED_PLACEHOLDER)
    estimate = PruneEstimate()
    selected: list[tuple[ToolResultPart, int]] = []
    saved = 0
    for part in _older_tool_results(messages, config):
        if part.compacted_at is not None:
            # Earlier passes already banked these savings; counting them keeps reruns stable.
            saved += max((part.original_tokens or 0) - placeholder, 0)
            continue
        tokens = count_part_tokens(part, counter)
        estimate.total_tool_tokens += tokens
        estimate.outputs_count += 1
        if saved > config.prune_protect or tokens < config.prune_minimum:
            continue
        selected.append((part, tokens))
        saving = max(tokens - placeholder, 0)
        saved += saving
        estimate.prunable_tokens += saving
    return selected, estimate


def needs_pruning(
    messages: list[Message],
    config: CompactionConfig = DEFAULT_COMPACTION_CONFIG,
    counter: TokenCounter | None = None,
) -> bool:
    selected, _estimate = _plan(messages, config, counter or DEFAULT_COUNTER)
    return bool(selected)


def estimate_prune_savings(
    messages: list[Message],
    config: CompactionConfig = DEFAULT_COMPACTION_CONFIG,
    counter: TokenCounter | None = None,
) -> PruneEstimate:
    _selected, estimate = _plan(messages, config, counter or DEFAULT_COUNTER)
    return estimate


def prune_tool_outputs(
    messages: list[Message],
    config: CompactionConfig = DEFAULT_COMPACTION_CONFIG,
    counter: TokenCounter | None = None,
) -> PruneResult:
    """Redact old, large tool outputs in a copy of `messages`.

    Message count, order and tool-call inputs are untouched; each redacted
    part keeps its call id and tool name and records `original_tokens`.
    """
    counter = counter or DEFAULT_COUNTER
    pruned = copy.deepcopy(messages)
    selected, _estimate = _plan(pruned, config, counter)
    result = PruneResult(messages=pruned)
    now = time.time()
    for part, tokens in selected:
        part.output = PRUNED_MARKER
        part.compacted_at = now
        part.original_tokens = tokens
        result.tokens_saved += tokens - count_part_tokens(part, counter)
        result.outputs_pruned += 1
        if part.tool_name not in result.pruned_tools:
            result.pruned_tools.append(part.tool_name)
    return result
