from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import List, Protocol

from cmsagent.backends.registry import ModelBackend, ModelRequest
from cmsagent.core.types import Message, TextPart, ToolCallPart, ToolResultPart
from cmsagent.runtime.pruning import (
    DEFAULT_COMPACTION_CONFIG,
    CompactionConfig,
    estimate_prune_savings,
    needs_pruning,
    prune_tool_outputs,
)
from cmsagent.runtime.tokens import (
    DEFAULT_COUNTER,
    ModelSpec,
    TokenCounter,
    available_tokens,
    context_usage_percent,
    count_total_tokens,
    is_approaching_overflow,
    resolve_limits,
)

logger = logging.getLogger(__name__)

COMPACTION_PROMPT = """You are summarizing a CMS agent conversation to help continue it
in a new context window.

The AI continuing this conversation will NOT have access to the original messages.
Your summary becomes the starting context - make it actionable and specific.

Provide a detailed but concise summary that captures:
1. What was accomplished (pages, sections, content created/modified)
2. Current state (what's being worked on now)
3. User preferences (design choices, rejected options)
4. What comes next (remaining tasks)
5. Technical context (relevant IDs, error states)

Be specific. Use actual names, IDs, and values. Keep under 2000 tokens.
Format your response as a continuation prompt."""

SUMMARY_MAX_OUTPUT = 2000
_RESULT_PREVIEW_CHARS = 500


class Summarizer(Protocol):
    async def summarize(self, messages: list[Message]) -> str:
        ...


def messages_to_text(messages: list[Message]) -> str:
    blocks: list[str] = []
    for message in messages:
        lines: list[str] = []
        if message.is_summary:
            lines.append("[Previous conversation summary]")
        for part in message.parts:
            if isinstance(part, TextPart):
                if part.text:
                    lines.append(part.text)
            elif isinstance(part, ToolCallPart):
                arguments = json.dumps(part.input, default=str)
                lines.append(f"[Called {part.tool_name} with: {arguments}]")
            elif isinstance(part, ToolResultPart):
                if part.compacted_at is not None:
                    lines.append(f"[{part.tool_name} result: cleared]")
                    continue
                output = json.dumps(part.output, ensure_ascii=False, default=str)
                if len(output) > _RESULT_PREVIEW_CHARS:
                    output = output[:_RESULT_PREVIEW_CHARS] + "..."
                lines.append(f"[{part.tool_name} result: {output}]")
        blocks.append(f"{message.role.upper()}:\n" + "\n".join(lines))
    return "\n\n---\n\n".join(blocks)


class BackendSummarizer:
    def __init__(self, backend: ModelBackend, model: str | None = None) -> None:
        self.backend = backend
        self.model = model

    async def summarize(self, messages: list[Message]) -> str:
        prompt = (
            f"Summarize this CMS conversation:\n\n{messages_to_text(messages)}\n\n"
            "Provide a continuation prompt:"
        )
        response = await self.backend.generate(
            ModelRequest(
                system_prompt=COMPACTION_PROMPT,
                messages=[Message.from_text("user", prompt)],
                model=self.model,
                max_output_tokens=SUMMARY_MAX_OUTPUT,
            )
        )
        return response.text


class ExtractiveSummarizer:
    """Summary without a model call: the user requests and what each tool did."""

    def __init__(self, max_chars: int = 4000) -> None:
        self.max_chars = max_chars

    async def summarize(self, messages: list[Message]) -> str:
        requests: list[str] = []
        actions: list[str] = []
        for message in messages:
            if message.role == "user" and message.text:
                requests.append(message.text.strip())
            elif message.is_summary:
                requests.append(f"(earlier) {message.text.strip()}")
            for part in message.tool_results():
                outcome = "failed" if part.is_error else "ok"
                actions.append(f"{part.tool_name}: {outcome}")
        text = "Conversation so far.\nRequests:\n"
        text += "\n".join(f"- {item}" for item in requests) or "- none"
        text += "\nTool activity:\n"
        text += "\n".join(f"- {item}" for item in actions) or "- none"
        return text[: self.max_chars]


@dataclass(slots=True)
class CompactionResult:
    messages: List[Message]
    messages_compacted: int = 0
    tokens_saved: int = 0


def recent_turns(messages: list[Message], n: int) -> list[Message]:
    """The last `n` turns, each starting at a user message."""
    if n <= 0:
        return []
    turns = 0
    start = len(messages)
    for index in range(len(messages) - 1, -1, -1):
        start = index
        if messages[index].role == "user":
            turns += 1
            if turns >= n:
                break
    return list(messages[start:])


def filter_for_compaction(messages: list[Message]) -> list[Message]:
    kept: list[Message] = []
    for message in messages:
        if message.role == "assistant" and message.error:
            if not any(isinstance(part, (TextPart, ToolCallPart)) for part in message.parts):
                continue
        kept.append(message)
    return kept


async def compact(
    messages: list[Message],
    config: CompactionConfig = DEFAULT_COMPACTION_CONFIG,
    summarizer: Summarizer | None = None,
    counter: TokenCounter | None = None,
) -> CompactionResult:
    """Replace everything but the recent turns with one summary message.

    Destructive: the replaced messages are gone from the returned list.
    """
    summarizer = summarizer or ExtractiveSummarizer()
    system = [messages[0]] if messages and messages[0].role == "system" else []
    body = messages[len(system) :]
    recent = recent_turns(body, config.min_turns_to_keep)
    older = body[: len(body) - len(recent)]
    if not older:
        return CompactionResult(messages=list(messages))
    before = count_total_tokens(messages, counter)
    summary_text = await summarizer.summarize(filter_for_compaction(older))
    summary = Message.from_text("assistant", summary_text, is_summary=True)
    compacted = [*system, summary, *recent]
    after = count_total_tokens(compacted, counter)
    return CompactionResult(
        messages=compacted,
        messages_compacted=len(older),
        tokens_saved=before - after,
    )


@dataclass(slots=True)
class ContextPrepareResult:
    stage: str = "none"
    was_pruned: bool = False
    was_compacted: bool = False
    tokens_before: int = 0
    tokens_after_prune: int = 0
    tokens_after_compact: int = 0
    tokens_final: int = 0
    pruned_outputs: int = 0
    compacted_messages: int = 0
    removed_tools: List[str] = field(default_factory=list)


async def prepare_context_for_llm(
    messages: list[Message],
    session_id: str,
    model_id: ModelSpec,
    *,
    force: bool = False,
    config: CompactionConfig | None = None,
    summarizer: Summarizer | None = None,
    counter: TokenCounter | None = None,
) -> tuple[list[Message], ContextPrepareResult]:
    cfg = config or DEFAULT_COMPACTION_CONFIG
    counter = counter or DEFAULT_COUNTER
    limits = resolve_limits(model_id, cfg.output_reserve)
    before = count_total_tokens(messages, counter)
    result = ContextPrepareResult(
        tokens_before=before,
        tokens_after_prune=before,
        tokens_after_compact=before,
        tokens_final=before,
    )
    if not force and not is_approaching_overflow(limits, before, threshold=cfg.overflow_threshold):
        return list(messages), result

    prepared = list(messages)
    if needs_pruning(prepared, cfg, counter):
        pruned = prune_tool_outputs(prepared, cfg, counter)
        prepared = pruned.messages
        result.was_pruned = pruned.outputs_pruned > 0
        result.pruned_outputs = pruned.outputs_pruned
        result.removed_tools = pruned.pruned_tools
        if result.was_pruned:
            result.stage = "prune"
            logger.info(
                "Pruned %d tool outputs for session %s (saved %d tokens)",
                pruned.outputs_pruned,
                session_id,
                pruned.tokens_saved,
            )
    after_prune = count_total_tokens(prepared, counter)
    result.tokens_after_prune = after_prune
    result.tokens_after_compact = after_prune
    result.tokens_final = after_prune

    over_ceiling = limits.usable <= 0 or after_prune > limits.usable * cfg.compaction_ceiling
    if not force and not over_ceiling:
        return prepared, result

    compacted = await compact(prepared, cfg, summarizer, counter)
    if compacted.messages_compacted == 0:
        if over_ceiling:
            logger.warning(
                "Session %s is over the compaction ceiling but has nothing old enough to compact",
                session_id,
            )
        return prepared, result
    prepared = compacted.messages
    after_compact = count_total_tokens(prepared, counter)
    result.stage = "compact"
    result.was_compacted = True
    result.compacted_messages = compacted.messages_compacted
    result.tokens_after_compact = after_compact
    result.tokens_final = after_compact
    logger.info(
        "Compacted %d messages for session %s (%d -> %d tokens)",
        compacted.messages_compacted,
        session_id,
        before,
        after_compact,
    )
    return prepared, result


def context_stats(
    messages: list[Message],
    model_id: ModelSpec,
    config: CompactionConfig | None = None,
    counter: TokenCounter | None = None,
) -> dict[str, object]:
    cfg = config or DEFAULT_COMPACTION_CONFIG
    limits = resolve_limits(model_id, cfg.output_reserve)
    total = count_total_tokens(messages, counter)
    estimate = estimate_prune_savings(messages, cfg, counter)
    return {
        "message_count": len(messages),
        "total_tokens": total,
        "context_limit": limits.context_limit,
        "max_output": limits.max_output,
        "usable_tokens": limits.usable,
        "usage_percent": round(context_usage_percent(limits, total), 2),
        "is_approaching_overflow": is_approaching_overflow(
            limits, total, threshold=cfg.overflow_threshold
        ),
        "available_tokens": available_tokens(limits, total),
        "prune_estimate": {
            "total_tool_tokens": estimate.total_tool_tokens,
            "prunable_tokens": estimate.prunable_tokens,
            "outputs_count": estimate.outputs_count,
        },
    }
