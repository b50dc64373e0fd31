"""Agent loop, recovery, memory, checkpoints and context budgeting."""

from .checkpoints import CheckpointManager, checkpoint_from_dict, checkpoint_to_dict
from .compaction import (
    BackendSummarizer,
    ContextPrepareResult,
    ExtractiveSummarizer,
    compact,
    context_stats,
    prepare_context_for_llm,
)
from .context import AgentRuntime, build_runtime
from .controller import StepRecord, ToolLoopController, TurnResult
from .memory import HierarchicalMemoryManager
from .modes import MODES, ModeConfig, get_mode
from .phases import detect_phase
from .pruning import (
    CompactionConfig,
    estimate_prune_savings,
    needs_pruning,
    prune_tool_outputs,
)
from .recovery import ErrorRecoveryManager
from .store import InMemorySessionStore, JsonFileSessionStore, SessionStore
from .tokens import (
    ModelLimits,
    available_tokens,
    context_usage_percent,
    get_model_limits,
    is_approaching_overflow,
)

__all__ = [
    "AgentRuntime",
    "BackendSummarizer",
    "CheckpointManager",
    "CompactionConfig",
    "ContextPrepareResult",
    "ErrorRecoveryManager",
    "ExtractiveSummarizer",
    "HierarchicalMemoryManager",
    "InMemorySessionStore",
    "JsonFileSessionStore",
    "MODES",
    "ModeConfig",
    "ModelLimits",
    "SessionStore",
    "StepRecord",
    "ToolLoopController",
    "TurnResult",
    "available_tokens",
    "build_runtime",
    "checkpoint_from_dict",
    "checkpoint_to_dict",
    "compact",
    "context_stats",
    "context_usage_percent",
    "detect_phase",
    "estimate_prune_savings",
    "get_mode",
    "get_model_limits",
    "is_approaching_overflow",
    "needs_pruning",
    "prepare_context_for_llm",
    "prune_tool_outputs",
]
