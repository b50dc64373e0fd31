from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from cmsagent.backends.registry import ModelBackend, get_backend
from cmsagent.config import AgentSettings, load_settings
from cmsagent.core.types import Message
from cmsagent.discovery.embeddings import Embedder, build_embedder
from cmsagent.discovery.index import SearchOutcome, ToolDiscoveryIndex
from cmsagent.runtime.checkpoints import CheckpointManager
from cmsagent.runtime.compaction import (
    BackendSummarizer,
    ExtractiveSummarizer,
    Summarizer,
    context_stats,
)
from cmsagent.runtime.controller import Approver, ToolLoopController, TurnResult
from cmsagent.runtime.pruning import CompactionConfig
from cmsagent.runtime.recovery import ErrorRecoveryManager
from cmsagent.runtime.store import JsonFileSessionStore, SessionStore
from cmsagent.runtime.tokens import TokenCounter, build_counter
from cmsagent.tools.demo import DemoCms, build_demo_registry
from cmsagent.tools.executor import ToolExecutor
from cmsagent.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentRuntime:
    """Per-process owner of the instances sessions share.

    Breaker table, discovery index and stores live here rather than in module
    globals so tests can build as many isolated runtimes as they like.
    """

    settings: AgentSettings
    backend: ModelBackend
    registry: ToolRegistry
    executor: ToolExecutor
    store: SessionStore
    checkpoints: CheckpointManager
    recovery: ErrorRecoveryManager
    discovery: ToolDiscoveryIndex
    counter: TokenCounter
    compaction: CompactionConfig
    controller: ToolLoopController
    cms: DemoCms | None = None

    def start(self) -> asyncio.Task[None] | None:
        return self.discovery.start()

    async def run_turn(
        self,
        session_id: str,
        text: str,
        mode: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        prior = self.store.get_messages(session_id)
        result = await self.controller.execute(
            prior,
            Message.from_text("user", text),
            mode,
            session_id=session_id,
            cancel_event=cancel_event,
        )
        self.store.set_messages(session_id, result.messages)
        return result

    async def resume(
        self, session_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> TurnResult:
        result = await self.controller.resume(session_id, cancel_event=cancel_event)
        self.store.set_messages(session_id, result.messages)
        return result

    def context_stats(self, session_id: str, model: str | None = None) -> dict[str, Any]:
        messages = self.store.get_messages(session_id)
        model_id = model or self.settings.model
        stats = context_stats(messages, model_id, self.compaction, self.counter)
        stats["session_id"] = session_id
        stats["model"] = model_id
        return stats

    async def search_tools(
        self, query: str, limit: int = 5, *, force_vector: bool = False
    ) -> SearchOutcome:
        return await self.discovery.search_with_confidence(
            query, limit, force_vector=force_vector
        )


def build_runtime(
    settings: AgentSettings | None = None,
    *,
    backend: ModelBackend | None = None,
    registry: ToolRegistry | None = None,
    store: SessionStore | None = None,
    embedder: Embedder | None = None,
    summarizer: Summarizer | None = None,
    approver: Approver | None = None,
) -> AgentRuntime:
    settings = settings or load_settings()
    if backend is None:
        backend = get_backend(settings.backend, model=settings.model)
    cms: DemoCms | None = None
    if registry is None:
        registry, cms = build_demo_registry()
    if store is None:
        store = JsonFileSessionStore(settings.data_root)
    if summarizer is None:
        if settings.backend == "fake":
            summarizer = ExtractiveSummarizer()
        else:
            summarizer = BackendSummarizer(backend, settings.model)
    executor = ToolExecutor(registry)
    checkpoints = CheckpointManager(store, every=settings.checkpoint_every)
    recovery = ErrorRecoveryManager(
        max_failures=settings.max_failures,
        reset_after_s=settings.breaker_reset_s,
        max_retries=settings.max_retries,
    )
    counter = build_counter(settings.tokenizer)
    compaction = CompactionConfig(
        prune_minimum=settings.prune_minimum,
        prune_protect=settings.prune_protect,
        output_reserve=settings.output_reserve,
        min_turns_to_keep=settings.min_turns_to_keep,
        compaction_ceiling=settings.compaction_ceiling,
    )
    discovery = ToolDiscoveryIndex(
        registry.metadata(),
        embedder=embedder or build_embedder(settings.embedder),
        batch_size=settings.embed_batch_size,
    )
    controller = ToolLoopController(
        backend,
        executor,
        recovery=recovery,
        checkpoints=checkpoints,
        model=settings.model,
        compaction=compaction,
        enable_compaction=settings.enable_compaction,
        summarizer=summarizer,
        counter=counter,
        trace_dir=settings.data_root / "traces",
        approver=approver,
        clear_checkpoint_on_complete=settings.clear_checkpoint_on_complete,
    )
    logger.debug(
        "Runtime built: backend=%s model=%s tools=%d data_root=%s",
        settings.backend,
        settings.model,
        len(registry.list_tools()),
        settings.data_root,
    )
    return AgentRuntime(
        settings=settings,
        backend=backend,
        registry=registry,
        executor=executor,
        store=store,
        checkpoints=checkpoints,
        recovery=recovery,
        discovery=discovery,
        counter=counter,
        compaction=compaction,
        controller=controller,
        cms=cms,
    )
