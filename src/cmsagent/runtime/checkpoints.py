from __future__ import annotations

import logging
import math
import time
from typing import Any

from cmsagent.core.errors import CheckpointError
from cmsagent.core.types import (
    Checkpoint,
    MemoryState,
    Message,
    message_from_dict,
    message_to_dict,
    new_id,
    subgoal_from_dict,
    subgoal_to_dict,
)
from cmsagent.runtime.store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_EVERY = 3


def checkpoint_to_dict(checkpoint: Checkpoint) -> dict[str, Any]:
    return {
        "id": checkpoint.id,
        "session_id": checkpoint.session_id,
        "trace_id": checkpoint.trace_id,
        "phase": checkpoint.phase,
        "mode": checkpoint.mode,
        "step_number": checkpoint.step_number,
        "max_steps": checkpoint.max_steps,
        "current_subgoal": checkpoint.current_subgoal,
        "completed_subgoals": list(checkpoint.completed_subgoals),
        "messages": [message_to_dict(message) for message in checkpoint.messages],
        "working_memory": [message_to_dict(message) for message in checkpoint.working_memory],
        "subgoal_memory": [subgoal_to_dict(subgoal) for subgoal in checkpoint.subgoal_memory],
        "pending_actions": list(checkpoint.pending_actions),
        "last_tool_result": checkpoint.last_tool_result,
        "token_count": checkpoint.token_count,
        "estimated_completion": checkpoint.estimated_completion,
        "created_at": checkpoint.created_at,
    }


def _ensure_list_of_str(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return value
    raise ValueError(f"checkpoint field '{field_name}' must be list[str]")


def _ensure_str(value: Any, field_name: str) -> str:
    if isinstance(value, str):
        return value
    raise ValueError(f"checkpoint field '{field_name}' must be str")


def _ensure_int(value: Any, field_name: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise ValueError(f"checkpoint field '{field_name}' must be int")


def _coerce_messages(value: Any, field_name: str) -> list[Message]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"checkpoint field '{field_name}' must be a list")
    return [message_from_dict(item) for item in value]


def checkpoint_from_dict(payload: Any) -> Checkpoint:
    if not isinstance(payload, dict):
        raise ValueError("checkpoint payload must be an object")
    subgoals = payload.get("subgoal_memory") or []
    if not isinstance(subgoals, list):
        raise ValueError("checkpoint field 'subgoal_memory' must be a list")
    current = payload.get("current_subgoal")
    if current is not None and not isinstance(current, str):
        raise ValueError("checkpoint field 'current_subgoal' must be str")
    completion = payload.get("estimated_completion", 0.0)
    if not isinstance(completion, (int, float)):
        raise ValueError("checkpoint field 'estimated_completion' must be a number")
    return Checkpoint(
        id=_ensure_str(payload.get("id"), "id"),
        session_id=_ensure_str(payload.get("session_id"), "session_id"),
        trace_id=_ensure_str(payload.get("trace_id"), "trace_id"),
        phase=_ensure_str(payload.get("phase"), "phase"),
        mode=_ensure_str(payload.get("mode"), "mode"),
        step_number=_ensure_int(payload.get("step_number"), "step_number"),
        max_steps=_ensure_int(payload.get("max_steps"), "max_steps"),
        messages=_coerce_messages(payload.get("messages"), "messages"),
        working_memory=_coerce_messages(payload.get("working_memory"), "working_memory"),
        subgoal_memory=[subgoal_from_dict(item) for item in subgoals],
        current_subgoal=current,
        completed_subgoals=_ensure_list_of_str(
            payload.get("completed_subgoals"), "completed_subgoals"
        ),
        pending_actions=_ensure_list_of_str(payload.get("pending_actions"), "pending_actions"),
        last_tool_result=payload.get("last_tool_result"),
        token_count=_ensure_int(payload.get("token_count", 0), "token_count"),
        estimated_completion=float(completion),
        created_at=float(payload.get("created_at") or time.time()),
    )


def estimate_checkpoint_tokens(messages: list[Message]) -> int:
    return sum(math.ceil(len(message.render()) / 4) for message in messages)


class CheckpointManager:
    def __init__(self, store: SessionStore, every: int = DEFAULT_CHECKPOINT_EVERY) -> None:
        if every <= 0:
            raise ValueError("checkpoint cadence must be positive")
        self.store = store
        self.every = every

    def save(self, checkpoint: Checkpoint) -> None:
        try:
            self.store.set_checkpoint(checkpoint.session_id, checkpoint_to_dict(checkpoint))
        except Exception as exc:
            logger.exception("Failed to save checkpoint for session %s", checkpoint.session_id)
            raise CheckpointError(
                f"failed to save checkpoint for session '{checkpoint.session_id}': {exc}"
            ) from exc
        logger.info(
            "Checkpoint saved: session=%s step=%d phase=%s tokens=%d completion=%.0f%%",
            checkpoint.session_id,
            checkpoint.step_number,
            checkpoint.phase,
            checkpoint.token_count,
            checkpoint.estimated_completion,
        )

    def restore(self, session_id: str) -> Checkpoint | None:
        try:
            payload = self.store.get_checkpoint(session_id)
            if payload is None:
                logger.warning("No checkpoint found for session %s", session_id)
                return None
            checkpoint = checkpoint_from_dict(payload)
        except (OSError, ValueError) as exc:
            logger.error("Failed to restore checkpoint for session %s: %s", session_id, exc)
            return None
        logger.info(
            "Checkpoint restored: session=%s step=%d phase=%s subgoals_completed=%d",
            session_id,
            checkpoint.step_number,
            checkpoint.phase,
            len(checkpoint.completed_subgoals),
        )
        return checkpoint

    def exists(self, session_id: str) -> bool:
        try:
            return self.store.get_checkpoint(session_id) is not None
        except (OSError, ValueError):
            return False

    def clear(self, session_id: str) -> None:
        self.store.delete_checkpoint(session_id)
        logger.info("Checkpoint cleared for session %s", session_id)

    def list_checkpoints(self) -> list[Checkpoint]:
        checkpoints: list[Checkpoint] = []
        for session_id in self.store.list_checkpoint_ids():
            try:
                payload = self.store.get_checkpoint(session_id)
                if payload is None:
                    continue
                checkpoints.append(checkpoint_from_dict(payload))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable checkpoint %s: %s", session_id, exc)
        return checkpoints

    def create_checkpoint(
        self,
        *,
        session_id: str,
        trace_id: str,
        phase: str,
        mode: str,
        step_number: int,
        max_steps: int,
        messages: list[Message],
        memory_state: MemoryState,
        current_subgoal: str | None = None,
        completed_subgoals: list[str] | None = None,
        pending_actions: list[str] | None = None,
        last_tool_result: Any | None = None,
    ) -> Checkpoint:
        completion = min(step_number / max_steps * 100, 100.0) if max_steps > 0 else 100.0
        return Checkpoint(
            id=new_id(),
            session_id=session_id,
            trace_id=trace_id,
            phase=phase,
            mode=mode,
            step_number=step_number,
            max_steps=max_steps,
            messages=list(messages),
            working_memory=list(memory_state.working_memory),
            subgoal_memory=list(memory_state.subgoal_memory),
            current_subgoal=current_subgoal,
            completed_subgoals=list(completed_subgoals or []),
            pending_actions=list(pending_actions or []),
            last_tool_result=last_tool_result,
            token_count=estimate_checkpoint_tokens(messages),
            estimated_completion=completion,
        )

    def should_checkpoint(
        self,
        step_number: int,
        phase: str,
        previous_phase: str | None = None,
        *,
        is_before_approval: bool = False,
        is_after_error: bool = False,
    ) -> bool:
        if step_number % self.every == 0:
            return True
        if previous_phase is not None and phase != previous_phase:
            return True
        if is_before_approval:
            return True
        return is_after_error
