from __future__ import annotations

from pathlib import Path

from cmsagent.config import AgentSettings, load_settings


def test_load_settings_defaults(monkeypatch) -> None:
    for name in ("CMSAGENT_DATA_ROOT", "CMSAGENT_BACKEND", "CMSAGENT_OUTPUT_RESERVE"):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.data_root == Path("data")
    assert settings.backend == "fake"
    assert settings.output_reserve is None
    assert settings.checkpoint_every == AgentSettings().checkpoint_every


def test_load_settings_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("CMSAGENT_DATA_ROOT", "/tmp/cms")
    monkeypatch.setenv("CMSAGENT_MAX_FAILURES", "5")
    monkeypatch.setenv("CMSAGENT_COMPACTION_CEILING", "0.8")
    monkeypatch.setenv("CMSAGENT_ENABLE_COMPACTION", "off")
    monkeypatch.setenv("CMSAGENT_OUTPUT_RESERVE", "2048")
    monkeypatch.setenv("CMSAGENT_EMBEDDER", "http")

    settings = load_settings()

    assert settings.data_root == Path("/tmp/cms")
    assert settings.max_failures == 5
    assert settings.compaction_ceiling == 0.8
    assert settings.enable_compaction is False
    assert settings.output_reserve == 2048
    assert settings.embedder == "http"


def test_load_settings_ignores_malformed_numbers(monkeypatch) -> None:
    monkeypatch.setenv("CMSAGENT_MAX_FAILURES", "many")
    monkeypatch.setenv("CMSAGENT_BREAKER_RESET_S", "soon")

    settings = load_settings()

    assert settings.max_failures == 3
    assert settings.breaker_reset_s == 30.0
