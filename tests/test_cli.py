from __future__ import annotations

import json

import pytest

from cmsagent import cli


def _script(monkeypatch, responses: list[object]) -> None:
    monkeypatch.setenv("CMSAGENT_FAKE_RESPONSES", json.dumps(responses))


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("CMSAGENT_BACKEND", "CMSAGENT_DATA_ROOT", "CMSAGENT_FAKE_RESPONSES"):
        monkeypatch.delenv(name, raising=False)


def test_cli_run_backend_fake(monkeypatch, capsys, tmp_path) -> None:
    _script(
        monkeypatch,
        [
            {"tool_calls": [{"id": "c1", "tool": "getPage", "args": {"all": True}}]},
            "No pages yet.",
        ],
    )

    exit_code = cli.main(
        ["run", "--backend", "fake", "--text", "List pages", "--data-root", str(tmp_path / "d")]
    )

    captured = capsys.readouterr()
    assert exit_code == 0
    assert captured.out.strip() == "No pages yet."
    assert list((tmp_path / "d" / "traces").glob("demo-1__*.jsonl"))
    assert (tmp_path / "d" / "sessions" / "demo-1.json").exists()


def test_cli_run_reports_step_limit(monkeypatch, capsys) -> None:
    _script(
        monkeypatch,
        [{"tool_calls": [{"id": f"c{i}", "tool": "getPage", "args": {}}]} for i in range(5)],
    )

    exit_code = cli.main(["run", "--mode", "debug", "--text", "Loop"])

    captured = capsys.readouterr()
    assert exit_code == 0
    assert "[step_limit] after 4 step(s)" in captured.err


def test_cli_unknown_backend(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["run", "--backend", "unknown", "--text", "Hello"])
    captured = capsys.readouterr()
    assert excinfo.value.code == 2
    assert "invalid choice" in captured.err


def test_cli_resume_without_checkpoint() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["resume", "--session", "missing"])

    assert "no checkpoint for session 'missing'" in str(excinfo.value.code)


def test_cli_smoke(capsys, tmp_path) -> None:
    exit_code = cli.main(["smoke", "--data-root", str(tmp_path / "smoke")])

    captured = capsys.readouterr()
    assert exit_code == 0
    assert "Smoke run complete." in captured.out
    assert "Status: completed in 3 step(s)" in captured.out
    assert '"slug": "home"' in captured.out
    trace_line = next(line for line in captured.out.splitlines() if line.startswith("Trace file:"))
    assert (tmp_path / "smoke" / "traces").exists()
    assert trace_line.endswith(".jsonl")


def test_cli_checkpoints_lifecycle(monkeypatch, capsys) -> None:
    responses: list[object] = [
        {"tool_calls": [{"id": f"c{i}", "tool": "getPage", "args": {"all": True}}]}
        for i in range(3)
    ]
    # Once the script runs out the fake backend answers with an empty final message.
    _script(monkeypatch, responses)
    monkeypatch.setenv("CMSAGENT_CHECKPOINT_EVERY", "1")
    monkeypatch.setenv("CMSAGENT_CLEAR_CHECKPOINT_ON_COMPLETE", "0")
    cli.main(["run", "--session", "s1", "--text", "List pages"])
    capsys.readouterr()

    assert cli.main(["checkpoints"]) == 0
    listing = capsys.readouterr().out
    assert listing.startswith("s1\tmode=cms-crud")

    assert cli.main(["checkpoints", "--show", "s1"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["session_id"] == "s1"

    assert cli.main(["checkpoints", "--clear", "s1"]) == 0
    assert "Cleared checkpoint for s1" in capsys.readouterr().out
    assert cli.main(["checkpoints"]) == 0
    assert capsys.readouterr().out.strip() == "No checkpoints."


def test_cli_search_tools_json(capsys) -> None:
    exit_code = cli.main(["search-tools", "delete a page", "--limit", "1", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert payload["source"] == "bm25"
    assert payload["tools"][0]["name"] == "deletePage"


def test_cli_context_stats(monkeypatch, capsys, tmp_path) -> None:
    _script(monkeypatch, ["Hi there."])
    cli.main(["run", "--session", "s1", "--text", "Hello"])
    capsys.readouterr()

    exit_code = cli.main(["context-stats", "--session", "s1", "--model", "openai/gpt-4"])

    stats = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert stats["session_id"] == "s1"
    assert stats["model"] == "openai/gpt-4"
    assert stats["message_count"] == 2
    assert stats["context_limit"] == 8_192
