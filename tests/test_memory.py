from __future__ import annotations

from cmsagent.core.types import MemoryState, Message, Subgoal, ToolResultPart
from cmsagent.runtime.memory import (
    HierarchicalMemoryManager,
    detect_subgoal,
    estimate_text_tokens,
)


def _tool_message(output: str) -> Message:
    return Message(
        role="tool",
        parts=[ToolResultPart(tool_call_id="c1", tool_name="createPage", output=output)],
    )


def test_detect_subgoal_markers() -> None:
    done = detect_subgoal(Message.from_text("assistant", "Completed: home page\nNext up..."))
    failed = detect_subgoal(Message.from_text("assistant", "❌ Failed: about page"))
    none = detect_subgoal(Message.from_text("assistant", "Working on it"))
    user = detect_subgoal(Message.from_text("user", "Completed: nothing"))

    assert done is not None and done.label == "home page" and done.status == "completed"
    assert failed is not None and failed.label == "about page" and failed.status == "failed"
    assert none is None
    assert user is None


def test_completed_subgoal_collects_observations() -> None:
    memory = HierarchicalMemoryManager()
    memory.add_message(Message.from_text("user", "Build the home page"))
    memory.add_message(_tool_message("created page home with hero"))

    subgoal = memory.add_message(Message.from_text("assistant", "✅ Done: home page"))

    assert subgoal is not None
    assert "created page" in subgoal.key_observations
    assert subgoal.summary.startswith("Completed: home page.")
    assert memory.subgoal_memory == [subgoal]


def test_observations_reset_per_subgoal() -> None:
    memory = HierarchicalMemoryManager()
    memory.add_message(_tool_message("created page home"))
    memory.add_message(Message.from_text("assistant", "Completed: home"))
    memory.add_message(_tool_message("nothing interesting"))

    second = memory.add_message(Message.from_text("assistant", "Completed: about"))

    assert second is not None
    assert second.key_observations == []


def test_get_context_orders_system_subgoals_then_working() -> None:
    memory = HierarchicalMemoryManager()
    memory.add_message(Message.from_text("system", "You are a CMS agent"))
    memory.add_message(Message.from_text("user", "Create home"))
    memory.add_message(Message.from_text("assistant", "Completed: home"))
    memory.add_message(Message.from_text("user", "Now about"))

    context = memory.get_context()

    assert context[0].role == "system"
    assert context[1].role == "assistant"
    assert context[1].text.startswith("[Previous subgoal: home]")
    texts = [message.text for message in context[2:]]
    assert texts == ["Create home", "Completed: home", "Now about"]


def test_state_roundtrip_is_a_copy() -> None:
    memory = HierarchicalMemoryManager()
    memory.add_message(Message.from_text("user", "hello"))
    memory.add_subgoal(Subgoal(label="greet", status="completed"))

    state = memory.get_state()
    state.working_memory.append(Message.from_text("user", "mutated"))

    assert len(memory.working_memory) == 1

    restored = HierarchicalMemoryManager()
    restored.restore_state(
        MemoryState(working_memory=state.working_memory, subgoal_memory=state.subgoal_memory)
    )

    assert [message.text for message in restored.working_memory] == ["hello", "mutated"]
    assert restored.subgoal_memory[0].label == "greet"


def test_replace_working_keeps_subgoals() -> None:
    memory = HierarchicalMemoryManager()
    memory.add_message(Message.from_text("user", "one"))
    memory.add_message(Message.from_text("assistant", "Completed: one"))
    summary = Message.from_text("assistant", "summary", is_summary=True)

    memory.replace_working([summary])

    assert memory.working_memory == [summary]
    assert len(memory.subgoal_memory) == 1


def test_estimate_tokens_counts_subgoal_summaries() -> None:
    memory = HierarchicalMemoryManager()
    memory.add_message(Message.from_text("user", "x" * 40))
    working_only = memory.estimate_tokens(memory.working_memory)

    memory.add_subgoal(Subgoal(label="s", summary="y" * 40))

    assert working_only == 10
    assert memory.estimate_tokens() == 20


def test_estimate_tokens_is_monotonic_in_content_length() -> None:
    assert estimate_text_tokens("") == 0

    estimates = []
    for length in [0, 1, 4, 5, 40, 4000]:
        memory = HierarchicalMemoryManager()
        memory.add_message(Message.from_text("user", "x" * length))
        memory.add_message(
            Message(
                role="tool",
                parts=[ToolResultPart(tool_call_id="c1", tool_name="getPage", output="y" * length)],
            )
        )
        estimates.append(memory.estimate_tokens())

    assert all(estimate >= 0 for estimate in estimates)
    assert estimates == sorted(estimates)
    assert estimates[-1] > estimates[0]
