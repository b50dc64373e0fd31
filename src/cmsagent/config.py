from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MODEL = "openai/gpt-4o-mini"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


@dataclass(frozen=True, slots=True)
class AgentSettings:
    data_root: Path = Path("data")
    backend: str = "fake"
    model: str = DEFAULT_MODEL
    max_failures: int = 3
    breaker_reset_s: float = 30.0
    max_retries: int = 2
    checkpoint_every: int = 3
    prune_minimum: int = 20_000
    prune_protect: int = 40_000
    output_reserve: int | None = None
    min_turns_to_keep: int = 2
    compaction_ceiling: float = 0.95
    enable_compaction: bool = True
    tokenizer: str = "heuristic"
    embedder: str = "hash"
    embed_batch_size: int = 10
    clear_checkpoint_on_complete: bool = True
    admin_token: str | None = None


def load_settings() -> AgentSettings:
    defaults = AgentSettings()
    data_root = Path(_env_str("CMSAGENT_DATA_ROOT") or str(defaults.data_root))
    return AgentSettings(
        data_root=data_root,
        backend=_env_str("CMSAGENT_BACKEND", defaults.backend) or defaults.backend,
        model=_env_str("CMSAGENT_MODEL", defaults.model) or defaults.model,
        max_failures=_env_int("CMSAGENT_MAX_FAILURES", defaults.max_failures),
        breaker_reset_s=_env_float("CMSAGENT_BREAKER_RESET_S", defaults.breaker_reset_s),
        max_retries=_env_int("CMSAGENT_MAX_RETRIES", defaults.max_retries),
        checkpoint_every=_env_int("CMSAGENT_CHECKPOINT_EVERY", defaults.checkpoint_every),
        prune_minimum=_env_int("CMSAGENT_PRUNE_MINIMUM", defaults.prune_minimum),
        prune_protect=_env_int("CMSAGENT_PRUNE_PROTECT", defaults.prune_protect),
        output_reserve=_env_int("CMSAGENT_OUTPUT_RESERVE", 0) or None,
        min_turns_to_keep=_env_int("CMSAGENT_MIN_TURNS_TO_KEEP", defaults.min_turns_to_keep),
        compaction_ceiling=_env_float(
            "CMSAGENT_COMPACTION_CEILING", defaults.compaction_ceiling
        ),
        enable_compaction=_env_bool("CMSAGENT_ENABLE_COMPACTION", defaults.enable_compaction),
        tokenizer=_env_str("CMSAGENT_TOKENIZER", defaults.tokenizer) or defaults.tokenizer,
        embedder=_env_str("CMSAGENT_EMBEDDER", defaults.embedder) or defaults.embedder,
        embed_batch_size=_env_int("CMSAGENT_EMBED_BATCH", defaults.embed_batch_size),
        clear_checkpoint_on_complete=_env_bool(
            "CMSAGENT_CLEAR_CHECKPOINT_ON_COMPLETE", defaults.clear_checkpoint_on_complete
        ),
        admin_token=_env_str("CMSAGENT_ADMIN_TOKEN"),
    )
