from __future__ import annotations

import pytest

from cmsagent.core.errors import AgentError, UnknownModeError
from cmsagent.runtime.modes import DEFAULT_MODE, MODES, get_mode
from cmsagent.runtime.phases import PHASES, detect_phase
from cmsagent.tools.demo import DEMO_METADATA


def _allowed(mode: str) -> set[str]:
    return set(get_mode(mode).allowed_tools(DEMO_METADATA))


def test_mode_step_limits() -> None:
    assert {name: mode.max_steps for name, mode in MODES.items()} == {
        "architect": 6,
        "cms-crud": 10,
        "debug": 4,
        "ask": 6,
    }
    assert DEFAULT_MODE == "cms-crud"


def test_crud_mode_sees_every_tool() -> None:
    assert _allowed("cms-crud") == {tool.name for tool in DEMO_METADATA}


@pytest.mark.parametrize("mode", ["architect", "ask"])
def test_read_only_modes_hide_mutations(mode: str) -> None:
    allowed = _allowed(mode)

    assert allowed == {"getPage", "getSection"}


def test_unknown_mode_lists_known_modes() -> None:
    with pytest.raises(UnknownModeError) as excinfo:
        get_mode("chaos")

    assert isinstance(excinfo.value, AgentError)
    assert isinstance(excinfo.value, ValueError)
    assert "cms-crud" in str(excinfo.value)


@pytest.mark.parametrize(
    ("text", "had_tools", "phase"),
    [
        ("In summary, the page is live.", False, "reflecting"),
        ("Let me verify the section was saved.", True, "verifying"),
        ("Plan: first create the page, then add a hero.", False, "planning"),
        ("Creating the about page now.", True, "executing"),
        ("", True, "executing"),
        ("Hello there.", False, "unknown"),
        (None, False, "unknown"),
    ],
)
def test_detect_phase(text: str | None, had_tools: bool, phase: str) -> None:
    assert detect_phase(text, had_tool_calls=had_tools) == phase
    assert phase in PHASES
