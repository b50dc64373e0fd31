from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from cmsagent.core.errors import CheckpointError
from cmsagent.core.types import MemoryState, Message, Subgoal, ToolCallPart, ToolResultPart
from cmsagent.runtime.checkpoints import (
    CheckpointManager,
    checkpoint_from_dict,
    checkpoint_to_dict,
)
from cmsagent.runtime.store import InMemorySessionStore, JsonFileSessionStore


class BrokenStore(InMemorySessionStore):
    def set_checkpoint(self, session_id: str, payload: dict[str, Any]) -> None:
        raise OSError("disk full")


def _messages() -> list[Message]:
    return [
        Message.from_text("user", "Create a home page"),
        Message(
            role="assistant",
            parts=[ToolCallPart(tool_call_id="c1", tool_name="createPage", input={"slug": "home"})],
        ),
        Message(
            role="tool",
            parts=[ToolResultPart(tool_call_id="c1", tool_name="createPage", output={"ok": 1})],
        ),
    ]


def _checkpoint(manager: CheckpointManager, session_id: str = "s1", step: int = 2):
    messages = _messages()
    return manager.create_checkpoint(
        session_id=session_id,
        trace_id="t1",
        phase="executing",
        mode="cms-crud",
        step_number=step,
        max_steps=10,
        messages=messages,
        memory_state=MemoryState(
            working_memory=messages[:2],
            subgoal_memory=[Subgoal(label="home page", status="completed")],
        ),
        current_subgoal="Create a home page",
        completed_subgoals=["home page"],
        pending_actions=["createSection"],
        last_tool_result={"id": "c1", "ok": True},
    )


@pytest.mark.parametrize(
    ("step", "phase", "previous", "kwargs", "expected"),
    [
        (3, "executing", "executing", {}, True),
        (6, "executing", "executing", {}, True),
        (1, "executing", "executing", {}, False),
        (1, "executing", None, {}, False),
        (2, "verifying", "executing", {}, True),
        (1, "executing", "executing", {"is_before_approval": True}, True),
        (1, "executing", "executing", {"is_after_error": True}, True),
    ],
)
def test_should_checkpoint(step, phase, previous, kwargs, expected) -> None:
    manager = CheckpointManager(InMemorySessionStore(), every=3)

    assert manager.should_checkpoint(step, phase, previous, **kwargs) is expected


def test_create_checkpoint_estimates_completion_and_tokens() -> None:
    manager = CheckpointManager(InMemorySessionStore())

    checkpoint = _checkpoint(manager, step=2)

    assert checkpoint.estimated_completion == pytest.approx(20.0)
    assert checkpoint.token_count > 0
    assert len(checkpoint.messages) == 3
    assert len(checkpoint.working_memory) == 2
    assert checkpoint.id


def test_completion_is_capped() -> None:
    manager = CheckpointManager(InMemorySessionStore())

    checkpoint = _checkpoint(manager, step=12)

    assert checkpoint.estimated_completion == 100.0


def test_checkpoint_roundtrip_on_disk(tmp_path: Path) -> None:
    store = JsonFileSessionStore(tmp_path)
    manager = CheckpointManager(store)
    checkpoint = _checkpoint(manager)

    manager.save(checkpoint)
    restored = manager.restore("s1")

    assert restored is not None
    assert checkpoint_to_dict(restored) == checkpoint_to_dict(checkpoint)
    assert restored.messages[1].tool_calls()[0].input == {"slug": "home"}
    assert restored.subgoal_memory[0].label == "home page"
    assert (tmp_path / "checkpoints" / "s1.json").exists()
    assert not list((tmp_path / "checkpoints").glob("*.tmp"))


def test_restore_missing_returns_none() -> None:
    manager = CheckpointManager(InMemorySessionStore())

    assert manager.restore("nope") is None
    assert not manager.exists("nope")


def test_restore_corrupt_checkpoint_returns_none(tmp_path: Path) -> None:
    path = tmp_path / "checkpoints" / "bad.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    manager = CheckpointManager(JsonFileSessionStore(tmp_path))

    assert manager.restore("bad") is None


def test_restore_rejects_invalid_fields(tmp_path: Path) -> None:
    path = tmp_path / "checkpoints" / "bad.json"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"id": "x", "session_id": "bad"}), encoding="utf-8")
    manager = CheckpointManager(JsonFileSessionStore(tmp_path))

    assert manager.restore("bad") is None
    assert manager.list_checkpoints() == []


def test_save_failure_raises_checkpoint_error() -> None:
    manager = CheckpointManager(BrokenStore())

    with pytest.raises(CheckpointError, match="disk full"):
        manager.save(_checkpoint(manager))


def test_clear_and_list() -> None:
    manager = CheckpointManager(InMemorySessionStore())
    manager.save(_checkpoint(manager, "s1"))
    manager.save(_checkpoint(manager, "s2"))

    assert [cp.session_id for cp in manager.list_checkpoints()] == ["s1", "s2"]

    manager.clear("s1")

    assert not manager.exists("s1")
    assert manager.exists("s2")


def test_checkpoint_from_dict_requires_object() -> None:
    with pytest.raises(ValueError):
        checkpoint_from_dict(["not", "an", "object"])


def test_rejects_non_positive_cadence() -> None:
    with pytest.raises(ValueError):
        CheckpointManager(InMemorySessionStore(), every=0)
