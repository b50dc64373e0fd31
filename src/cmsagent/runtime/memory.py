from __future__ import annotations

import copy
import logging
import math
import re
from typing import Iterable

from cmsagent.core.types import MemoryState, Message, Subgoal

logger = logging.getLogger(__name__)

_DONE_RE = re.compile(r"(?:✅\s*Done|Completed):\s*(.+?)(?:\n|$)", re.I)
_FAILED_RE = re.compile(r"(?:❌\s*Failed|Error):\s*(.+?)(?:\n|$)", re.I)
_ACTION_RE = re.compile(r"(?:created|updated|deleted)[^\n]*?(?:page|section|entry)", re.I)
_CHECK_RE = re.compile(r"✅\s*(.+?)(?:\n|$)")

MAX_OBSERVATIONS = 5


def estimate_text_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def detect_subgoal(message: Message) -> Subgoal | None:
    """Best-effort: looks for "Done:" / "Failed:" style markers in assistant prose."""
    if message.role != "assistant":
        return None
    text = message.text
    done = _DONE_RE.search(text)
    if done:
        return Subgoal(label=done.group(1).strip(), status="completed")
    failed = _FAILED_RE.search(text)
    if failed:
        return Subgoal(label=failed.group(1).strip(), status="failed")
    return None


def extract_observations(messages: Iterable[Message]) -> list[str]:
    facts: list[str] = []
    for message in messages:
        content = message.render()
        if message.role == "tool":
            facts.extend(match.strip() for match in _ACTION_RE.findall(content))
        facts.extend(match.strip() for match in _CHECK_RE.findall(content))
    unique = list(dict.fromkeys(fact for fact in facts if fact))
    return unique[:MAX_OBSERVATIONS]


class HierarchicalMemoryManager:
    """Working memory (messages) plus subgoal memory (task progress records).

    Both layers only grow during a turn. `replace_working` and `restore_state`
    are the two ways to swap contents wholesale; the controller uses the first
    after compaction and the second when resuming from a checkpoint.
    """

    def __init__(self) -> None:
        self._working: list[Message] = []
        self._subgoals: list[Subgoal] = []
        self._subgoal_start = 0

    @property
    def working_memory(self) -> list[Message]:
        return list(self._working)

    @property
    def subgoal_memory(self) -> list[Subgoal]:
        return list(self._subgoals)

    def add_message(self, message: Message) -> Subgoal | None:
        self._working.append(message)
        subgoal = detect_subgoal(message)
        if subgoal is None:
            return None
        window = self._working[self._subgoal_start :]
        subgoal.key_observations = extract_observations(window)
        prefix = "Completed" if subgoal.status == "completed" else "Failed"
        actions = ", ".join(subgoal.key_observations[:3])
        subgoal.summary = f"{prefix}: {subgoal.label}. Key actions: {actions}."
        self.add_subgoal(subgoal)
        self._subgoal_start = len(self._working)
        return subgoal

    def add_subgoal(self, subgoal: Subgoal) -> None:
        self._subgoals.append(subgoal)
        logger.info("Subgoal %s: %s", subgoal.status, subgoal.label)

    def get_context(self) -> list[Message]:
        context: list[Message] = []
        rest = self._working
        if rest and rest[0].role == "system":
            context.append(rest[0])
            rest = rest[1:]
        for subgoal in self._subgoals:
            observations = "; ".join(subgoal.key_observations)
            context.append(
                Message.from_text(
                    "assistant",
                    f"[Previous subgoal: {subgoal.label}]\n{subgoal.summary}\n"
                    f"Key observations: {observations}",
                )
            )
        context.extend(rest)
        return context

    def get_state(self) -> MemoryState:
        return MemoryState(
            working_memory=copy.deepcopy(self._working),
            subgoal_memory=copy.deepcopy(self._subgoals),
        )

    def restore_state(self, state: MemoryState) -> None:
        self._working = copy.deepcopy(state.working_memory)
        self._subgoals = copy.deepcopy(state.subgoal_memory)
        self._subgoal_start = len(self._working)
        logger.info(
            "Memory state restored: working=%d subgoals=%d",
            len(self._working),
            len(self._subgoals),
        )

    def replace_working(self, messages: list[Message]) -> None:
        self._working = list(messages)
        self._subgoal_start = min(self._subgoal_start, len(self._working))

    def estimate_tokens(self, messages: list[Message] | None = None) -> int:
        working = self._working if messages is None else messages
        total = sum(estimate_text_tokens(message.render()) for message in working)
        if messages is None:
            total += sum(
                estimate_text_tokens(subgoal.summary + "".join(subgoal.key_observations))
                for subgoal in self._subgoals
            )
        return total
