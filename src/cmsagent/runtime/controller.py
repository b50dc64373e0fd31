from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, List

from cmsagent.backends.registry import ModelBackend, ModelRequest
from cmsagent.core.errors import CheckpointError, CheckpointNotFoundError
from cmsagent.core.tracing import NullTraceWriter, TraceWriter
from cmsagent.core.types import (
    Checkpoint,
    MemoryState,
    Message,
    TextPart,
    ToolCallPart,
    new_id,
)
from cmsagent.runtime.checkpoints import CheckpointManager
from cmsagent.runtime.compaction import (
    ExtractiveSummarizer,
    Summarizer,
    prepare_context_for_llm,
)
from cmsagent.runtime.memory import HierarchicalMemoryManager
from cmsagent.runtime.modes import ModeConfig, get_mode
from cmsagent.runtime.phases import detect_phase
from cmsagent.runtime.pruning import DEFAULT_COMPACTION_CONFIG, CompactionConfig
from cmsagent.runtime.recovery import ErrorRecoveryManager
from cmsagent.runtime.tokens import ModelLimits, TokenCounter
from cmsagent.tools.executor import ToolContext, ToolExecutor
from cmsagent.tools.registry import ToolMetadata
from cmsagent.tools.results import ToolErr, ToolOk, ToolResult, result_to_dict

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "Action denied by user"

Approver = Callable[[ToolCallPart, ToolMetadata], Awaitable[bool]]


async def approve_all(_call: ToolCallPart, _metadata: ToolMetadata) -> bool:
    return True


@dataclass(slots=True)
class StepRecord:
    number: int
    phase: str = "unknown"
    text: str = ""
    tool_calls: List[ToolCallPart] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)
    finish_reason: str = ""
    tokens_before: int = 0
    tokens_after: int = 0
    compaction_stage: str = "none"
    needed_approval: bool = False
    checkpointed: bool = False
    checkpoint_error: str | None = None


@dataclass(slots=True)
class TurnResult:
    final_text: str
    steps: List[StepRecord]
    messages: List[Message]
    status: str = "completed"
    error: str | None = None
    session_id: str = ""
    trace_id: str = ""
    phase: str = "unknown"


@dataclass(slots=True)
class _TurnState:
    session_id: str
    trace_id: str
    mode: ModeConfig
    max_steps: int
    step_number: int
    memory: HierarchicalMemoryManager
    tracer: TraceWriter
    pending: List[Message] = field(default_factory=list)
    previous_phase: str | None = None
    request_text: str | None = None
    failures: dict[str, int] = field(default_factory=dict)
    last_tool_result: Any | None = None

    def fold(self) -> None:
        for message in self.pending:
            subgoal = self.memory.add_message(message)
            if subgoal is not None:
                self.tracer.emit("subgoal", label=subgoal.label, status=subgoal.status)
        self.pending = []


def _cancelled(cancel_event: asyncio.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


class ToolLoopController:
    """Drives one user turn as a bounded sequence of model steps.

    Per step, in order: fold the previous step into memory, prune or compact
    the history when it is over budget, call the model with the mode's tool
    subset, run the requested tools behind their circuit breakers, update the
    breakers, then tag the phase and checkpoint when due.
    """

    def __init__(
        self,
        backend: ModelBackend,
        executor: ToolExecutor,
        *,
        recovery: ErrorRecoveryManager | None = None,
        checkpoints: CheckpointManager | None = None,
        model: str | None = None,
        model_limits: ModelLimits | None = None,
        compaction: CompactionConfig = DEFAULT_COMPACTION_CONFIG,
        enable_compaction: bool = True,
        summarizer: Summarizer | None = None,
        counter: TokenCounter | None = None,
        trace_dir: Path | None = None,
        approver: Approver | None = None,
        clear_checkpoint_on_complete: bool = True,
    ) -> None:
        self.backend = backend
        self.executor = executor
        self.recovery = recovery or ErrorRecoveryManager()
        self.checkpoints = checkpoints
        self.model = model
        self.model_limits = model_limits
        self.compaction = compaction
        self.enable_compaction = enable_compaction
        self.summarizer = summarizer or ExtractiveSummarizer()
        self.counter = counter
        self.trace_dir = trace_dir
        self.approver = approver or approve_all
        self.clear_checkpoint_on_complete = clear_checkpoint_on_complete

    def _tracer(self, session_id: str, trace_id: str) -> TraceWriter:
        if self.trace_dir is None:
            return NullTraceWriter(session_id, trace_id=trace_id)
        return TraceWriter(session_id, base_dir=self.trace_dir, trace_id=trace_id)

    async def execute(
        self,
        prior_messages: list[Message],
        user_message: Message | str,
        mode: str,
        *,
        session_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        mode_config = get_mode(mode)
        if isinstance(user_message, str):
            user_message = Message.from_text("user", user_message)
        session_id = session_id or new_id()
        trace_id = new_id()
        memory = HierarchicalMemoryManager()
        for message in prior_messages:
            memory.add_message(message)
        state = _TurnState(
            session_id=session_id,
            trace_id=trace_id,
            mode=mode_config,
            max_steps=mode_config.max_steps,
            step_number=0,
            memory=memory,
            tracer=self._tracer(session_id, trace_id),
            pending=[user_message],
            request_text=user_message.text,
        )
        state.tracer.emit(
            "turn_start",
            mode=mode_config.name,
            max_steps=state.max_steps,
            prior_messages=len(prior_messages),
            resumed=False,
        )
        return await self._run(state, cancel_event)

    async def resume(
        self, session_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> TurnResult:
        if self.checkpoints is None:
            raise CheckpointNotFoundError(session_id)
        checkpoint = self.checkpoints.restore(session_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(session_id)
        mode_config = get_mode(checkpoint.mode)
        memory = HierarchicalMemoryManager()
        memory.restore_state(
            MemoryState(
                working_memory=checkpoint.working_memory,
                subgoal_memory=checkpoint.subgoal_memory,
            )
        )
        trace_id = new_id()
        state = _TurnState(
            session_id=session_id,
            trace_id=trace_id,
            mode=mode_config,
            max_steps=checkpoint.max_steps,
            step_number=checkpoint.step_number,
            memory=memory,
            tracer=self._tracer(session_id, trace_id),
            # Messages past the working layer belong to the last step and were never folded.
            pending=list(checkpoint.messages[len(checkpoint.working_memory) :]),
            previous_phase=checkpoint.phase,
            request_text=checkpoint.current_subgoal,
            last_tool_result=checkpoint.last_tool_result,
        )
        logger.info(
            "Resuming session %s at step %d/%d (previous trace %s)",
            session_id,
            checkpoint.step_number,
            checkpoint.max_steps,
            checkpoint.trace_id,
        )
        state.tracer.emit(
            "turn_start",
            mode=mode_config.name,
            max_steps=state.max_steps,
            step_number=state.step_number,
            resumed=True,
            previous_trace_id=checkpoint.trace_id,
        )
        return await self._run(state, cancel_event)

    async def _run(self, state: _TurnState, cancel_event: asyncio.Event | None) -> TurnResult:
        steps: list[StepRecord] = []
        final_text = ""
        status = "completed"
        error: str | None = None

        while True:
            if state.step_number >= state.max_steps:
                state.fold()
                status = "step_limit"
                break
            if _cancelled(cancel_event):
                state.fold()
                status = "cancelled"
                break

            state.fold()
            state.step_number += 1
            step = StepRecord(number=state.step_number)
            state.tracer.emit("step_start", step=step.number)

            await self._prepare_context(state, step)

            if _cancelled(cancel_event):
                status = "cancelled"
                break
            allowed = state.mode.allowed_tools(self.executor.registry.metadata())
            request = ModelRequest(
                system_prompt=state.mode.instructions,
                messages=state.memory.get_context(),
                tools=self.executor.registry.definitions(allowed),
                step_limit=state.max_steps,
                model=self.model,
            )
            state.tracer.emit(
                "llm_req",
                step=step.number,
                messages=len(request.messages),
                tools=[tool.name for tool in request.tools],
            )
            try:
                response = await self.backend.generate(request)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Model call failed for session %s at step %d: %s",
                    state.session_id,
                    step.number,
                    exc,
                )
                state.tracer.emit("llm_error", step=step.number, error=str(exc))
                step.finish_reason = "error"
                steps.append(step)
                status = "failed"
                error = str(exc) or repr(exc)
                break
            state.tracer.emit(
                "llm_done",
                step=step.number,
                finish_reason=response.finish_reason,
                tool_calls=[call.tool_name for call in response.tool_calls],
                usage=response.usage,
            )
            step.text = response.text
            step.tool_calls = list(response.tool_calls)
            step.finish_reason = response.finish_reason

            parts: list[Any] = [TextPart(text=response.text)] if response.text else []
            parts.extend(response.tool_calls)
            assistant = Message(role="assistant", parts=parts)

            if not response.tool_calls:
                state.memory.add_message(assistant)
                step.phase = detect_phase(response.text, had_tool_calls=False)
                final_text = response.text
                steps.append(step)
                self._maybe_checkpoint(state, step, is_after_error=False)
                status = "completed"
                break

            results, interrupted = await self._run_tools(
                state, step, response.tool_calls, set(allowed), cancel_event
            )
            step.tool_results = results
            if interrupted:
                steps.append(step)
                status = "cancelled"
                break
            state.pending = [
                assistant,
                Message(role="tool", parts=[result.to_part() for result in results]),
            ]
            if results:
                state.last_tool_result = result_to_dict(results[-1])
            step.phase = detect_phase(response.text, had_tool_calls=True)
            steps.append(step)
            self._maybe_checkpoint(
                state, step, is_after_error=any(not result.ok for result in results)
            )

        phase = steps[-1].phase if steps else (state.previous_phase or "unknown")
        if status == "completed" and self.checkpoints is not None:
            if self.clear_checkpoint_on_complete:
                self.checkpoints.clear(state.session_id)
        state.tracer.emit(
            "turn_done",
            status=status,
            steps=len(steps),
            step_number=state.step_number,
            final_text=final_text,
            error=error,
        )
        return TurnResult(
            final_text=final_text,
            steps=steps,
            messages=state.memory.working_memory,
            status=status,
            error=error,
            session_id=state.session_id,
            trace_id=state.trace_id,
            phase=phase,
        )

    async def _prepare_context(self, state: _TurnState, step: StepRecord) -> None:
        if not self.enable_compaction:
            return
        history = state.memory.working_memory
        prepared, result = await prepare_context_for_llm(
            history,
            state.session_id,
            self.model_limits or self.model or "",
            config=self.compaction,
            summarizer=self.summarizer,
            counter=self.counter,
        )
        step.tokens_before = result.tokens_before
        step.tokens_after = result.tokens_final
        step.compaction_stage = result.stage
        if result.stage == "none":
            return
        state.memory.replace_working(prepared)
        state.tracer.emit(
            "compaction",
            step=step.number,
            stage=result.stage,
            tokens_before=result.tokens_before,
            tokens_after=result.tokens_final,
            pruned_outputs=result.pruned_outputs,
            compacted_messages=result.compacted_messages,
            removed_tools=result.removed_tools,
        )

    async def _run_tools(
        self,
        state: _TurnState,
        step: StepRecord,
        calls: list[ToolCallPart],
        allowed: set[str],
        cancel_event: asyncio.Event | None,
    ) -> tuple[list[ToolResult], bool]:
        results: list[ToolResult] = []
        context = ToolContext(
            session_id=state.session_id, trace_id=state.trace_id, mode=state.mode.name
        )
        for call in calls:
            if _cancelled(cancel_event):
                return results, True
            name = call.tool_name
            spec = self.executor.registry.get(name)
            if spec is None or name not in allowed:
                message = f"Tool '{name}' not found in {state.mode.name} mode"
                results.append(
                    ToolErr(
                        id=call.tool_call_id,
                        tool=name,
                        error=message,
                        observation=self.recovery.generate_error_observation(name, message),
                        executed=False,
                    )
                )
                continue

            if spec.metadata.requires_confirmation:
                if not step.needed_approval:
                    self._checkpoint_before_approval(state, step)
                step.needed_approval = True
                state.tracer.emit("approval_request", step=step.number, tool=name, args=call.input)
                approved = await self.approver(call, spec.metadata)
                state.tracer.emit("approval_done", step=step.number, tool=name, approved=approved)
                if not approved:
                    results.append(
                        ToolErr(
                            id=call.tool_call_id,
                            tool=name,
                            error=DENIED_MESSAGE,
                            observation=DENIED_MESSAGE,
                            executed=False,
                        )
                    )
                    continue

            if self.recovery.is_circuit_open(name):
                observation = self.recovery.circuit_open_observation(name)
                logger.warning("Circuit open for %s, call rejected", name)
                state.tracer.emit("circuit_open", step=step.number, tool=name)
                results.append(
                    ToolErr(
                        id=call.tool_call_id,
                        tool=name,
                        error=observation,
                        observation=observation,
                        executed=False,
                    )
                )
                continue

            state.tracer.emit(
                "tool_start", step=step.number, id=call.tool_call_id, tool=name, args=call.input
            )
            start = time.monotonic()
            try:
                result = await self.executor.execute(call, context)
            except asyncio.CancelledError:
                self.recovery.release_probe(name)
                raise
            duration_ms = int((time.monotonic() - start) * 1000)

            if isinstance(result, ToolOk):
                self.recovery.record_success(name)
                state.failures.pop(name, None)
            else:
                attempt = state.failures.get(name, 0)
                self.recovery.record_failure(name, result.error)
                result.observation = self.recovery.generate_error_observation(
                    name, result.error, attempt
                )
                state.failures[name] = attempt + 1
            state.tracer.emit(
                "tool_done",
                step=step.number,
                id=call.tool_call_id,
                tool=name,
                ok=result.ok,
                duration_ms=duration_ms,
                error=None if result.ok else result.error,
            )
            results.append(result)
        return results, False

    def _maybe_checkpoint(
        self, state: _TurnState, step: StepRecord, *, is_after_error: bool
    ) -> None:
        previous = state.previous_phase
        state.previous_phase = step.phase
        if self.checkpoints is None:
            return
        due = self.checkpoints.should_checkpoint(
            step.number, step.phase, previous, is_after_error=is_after_error
        )
        # An approved step is saved again once it has run so a resume never repeats it.
        if not due and not step.needed_approval:
            return
        pending_actions = [
            result.tool for result in step.tool_results if isinstance(result, ToolErr)
        ]
        checkpoint = self._save_checkpoint(
            self.checkpoints,
            state,
            step,
            phase=step.phase,
            step_number=state.step_number,
            pending_actions=pending_actions,
        )
        if checkpoint is None:
            return
        step.checkpointed = True
        state.tracer.emit(
            "checkpoint",
            step=step.number,
            phase=step.phase,
            token_count=checkpoint.token_count,
            estimated_completion=checkpoint.estimated_completion,
        )

    def _checkpoint_before_approval(self, state: _TurnState, step: StepRecord) -> None:
        """Save the state as of the last completed step before waiting on a human.

        Resuming from it replays the current step, so the model asks for the
        confirmation again instead of the tool running unapproved.
        """
        if self.checkpoints is None:
            return
        phase = state.previous_phase or "unknown"
        completed = state.step_number - 1
        if not self.checkpoints.should_checkpoint(
            completed, phase, phase, is_before_approval=True
        ):
            return
        checkpoint = self._save_checkpoint(
            self.checkpoints, state, step, phase=phase, step_number=completed, pending_actions=[]
        )
        if checkpoint is None:
            return
        state.tracer.emit(
            "checkpoint",
            step=step.number,
            phase=phase,
            before_approval=True,
            token_count=checkpoint.token_count,
            estimated_completion=checkpoint.estimated_completion,
        )

    def _save_checkpoint(
        self,
        checkpoints: CheckpointManager,
        state: _TurnState,
        step: StepRecord,
        *,
        phase: str,
        step_number: int,
        pending_actions: list[str],
    ) -> Checkpoint | None:
        memory_state = state.memory.get_state()
        subgoals = memory_state.subgoal_memory
        checkpoint = checkpoints.create_checkpoint(
            session_id=state.session_id,
            trace_id=state.trace_id,
            phase=phase,
            mode=state.mode.name,
            step_number=step_number,
            max_steps=state.max_steps,
            messages=[*memory_state.working_memory, *state.pending],
            memory_state=memory_state,
            current_subgoal=state.request_text,
            completed_subgoals=[s.label for s in subgoals if s.status == "completed"],
            pending_actions=pending_actions,
            last_tool_result=state.last_tool_result,
        )
        try:
            checkpoints.save(checkpoint)
        except CheckpointError as exc:
            step.checkpoint_error = str(exc)
            state.tracer.emit("checkpoint_error", step=step.number, error=str(exc))
            return None
        return checkpoint
