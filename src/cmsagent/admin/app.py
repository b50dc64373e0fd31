from __future__ import annotations

import dataclasses
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from cmsagent.admin.trace_parser import parse_trace_file
from cmsagent.config import load_settings
from cmsagent.core.errors import CheckpointNotFoundError
from cmsagent.runtime.checkpoints import checkpoint_to_dict
from cmsagent.runtime.context import AgentRuntime, build_runtime
from cmsagent.runtime.controller import TurnResult
from cmsagent.runtime.modes import DEFAULT_MODE, MODES
from cmsagent.tools.results import result_to_dict


class RunTurnRequest(BaseModel):
    session_id: str
    text: str
    mode: str = DEFAULT_MODE


def _extract_trace_id(session_id: str, filename: str) -> str | None:
    prefix = f"{session_id}__"
    if not filename.startswith(prefix) or not filename.endswith(".jsonl"):
        return None
    return filename[len(prefix) : -len(".jsonl")]


def _turn_payload(result: TurnResult) -> dict[str, Any]:
    return {
        "session_id": result.session_id,
        "trace_id": result.trace_id,
        "status": result.status,
        "final_text": result.final_text,
        "error": result.error,
        "phase": result.phase,
        "steps": [
            {
                "number": step.number,
                "phase": step.phase,
                "text": step.text,
                "tool_results": [result_to_dict(item) for item in step.tool_results],
                "compaction_stage": step.compaction_stage,
                "checkpointed": step.checkpointed,
                "checkpoint_error": step.checkpoint_error,
            }
            for step in result.steps
        ],
        "inspect_url": f"/?session={result.session_id}&run={result.trace_id}",
    }


def create_app(data_root: Path | None = None, runtime: AgentRuntime | None = None) -> FastAPI:
    if runtime is None:
        settings = load_settings()
        if data_root is not None:
            settings = dataclasses.replace(settings, data_root=data_root)
        runtime = build_runtime(settings)
    root = runtime.settings.data_root
    traces_dir = root / "traces"
    template_dir = Path(__file__).resolve().parent / "templates"
    templates = Jinja2Templates(directory=str(template_dir))

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        task = runtime.start()
        yield
        if task is not None and not task.done():
            task.cancel()

    app = FastAPI(lifespan=lifespan)
    app.state.runtime = runtime
    app.state.data_root = root

    @app.middleware("http")
    async def _auth_middleware(request: Request, call_next):
        token = runtime.settings.admin_token or os.getenv("CMSAGENT_ADMIN_TOKEN")
        if token and request.url.path.startswith("/api/"):
            if request.headers.get("X-Admin-Token") != token:
                return JSONResponse(status_code=401, content={"detail": "Invalid admin token"})
        return await call_next(request)

    def _session_ids() -> list[str]:
        ids = set(runtime.checkpoints.store.list_checkpoint_ids())
        if traces_dir.exists():
            for path in traces_dir.glob("*__*.jsonl"):
                ids.add(path.name.split("__", 1)[0])
        return sorted(ids)

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request):
        return templates.TemplateResponse(
            request,
            "index.html",
            {
                "sessions": _session_ids(),
                "circuits": runtime.recovery.get_circuit_status(),
                "tools": runtime.registry.metadata(),
                "modes": list(MODES.values()),
                "vector_ready": runtime.discovery.vector_ready,
                "model": runtime.settings.model,
            },
        )

    @app.get("/api/sessions")
    async def list_sessions() -> dict[str, Any]:
        checkpoints = {cp.session_id: cp for cp in runtime.checkpoints.list_checkpoints()}
        sessions: list[dict[str, Any]] = []
        for session_id in _session_ids():
            checkpoint = checkpoints.get(session_id)
            entry: dict[str, Any] = {"session_id": session_id, "has_checkpoint": False}
            if checkpoint is not None:
                entry.update(
                    {
                        "has_checkpoint": True,
                        "mode": checkpoint.mode,
                        "phase": checkpoint.phase,
                        "step_number": checkpoint.step_number,
                        "max_steps": checkpoint.max_steps,
                        "estimated_completion": checkpoint.estimated_completion,
                        "created_at": checkpoint.created_at,
                    }
                )
            sessions.append(entry)
        return {"sessions": sessions}

    @app.get("/api/sessions/{session_id}/checkpoint")
    async def get_checkpoint(session_id: str) -> dict[str, Any]:
        checkpoint = runtime.checkpoints.restore(session_id)
        if checkpoint is None:
            raise HTTPException(status_code=404, detail="Checkpoint not found")
        return checkpoint_to_dict(checkpoint)

    @app.delete("/api/sessions/{session_id}/checkpoint")
    async def delete_checkpoint(session_id: str) -> dict[str, Any]:
        existed = runtime.checkpoints.exists(session_id)
        runtime.checkpoints.clear(session_id)
        return {"session_id": session_id, "cleared": existed}

    @app.get("/api/sessions/{session_id}/context-stats")
    async def get_context_stats(session_id: str, model: str | None = None) -> dict[str, Any]:
        return runtime.context_stats(session_id, model)

    @app.get("/api/sessions/{session_id}/runs")
    async def list_runs(session_id: str) -> dict[str, Any]:
        paths = sorted(
            traces_dir.glob(f"{session_id}__*.jsonl"), key=lambda item: item.stat().st_mtime
        )
        runs: list[dict[str, Any]] = []
        for path in paths:
            trace_id = _extract_trace_id(session_id, path.name)
            if trace_id is None:
                continue
            runs.append({"trace_id": trace_id, "file_name": path.name})
        return {"session_id": session_id, "runs": runs}

    @app.get("/api/sessions/{session_id}/runs/{trace_id}")
    async def get_run(session_id: str, trace_id: str) -> dict[str, Any]:
        trace_path = traces_dir / f"{session_id}__{trace_id}.jsonl"
        if not trace_path.exists():
            raise HTTPException(status_code=404, detail="Trace file not found")
        parsed = parse_trace_file(trace_path)
        return {
            "session_id": session_id,
            "trace_id": trace_id,
            "file_name": trace_path.name,
            **parsed,
        }

    @app.post("/api/run_turn")
    async def run_turn(payload: RunTurnRequest) -> dict[str, Any]:
        try:
            result = await runtime.run_turn(payload.session_id, payload.text, payload.mode)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _turn_payload(result)

    @app.post("/api/sessions/{session_id}/resume")
    async def resume(session_id: str) -> dict[str, Any]:
        try:
            result = await runtime.resume(session_id)
        except CheckpointNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return _turn_payload(result)

    @app.get("/api/circuits")
    async def list_circuits() -> dict[str, Any]:
        return {"circuits": runtime.recovery.get_circuit_status()}

    @app.post("/api/circuits/{tool_name}/reset")
    async def reset_circuit(tool_name: str) -> dict[str, Any]:
        if not runtime.recovery.reset_circuit(tool_name):
            raise HTTPException(status_code=404, detail=f"No circuit for tool '{tool_name}'")
        return {"tool_name": tool_name, "state": "closed"}

    @app.get("/api/tools/search")
    async def search_tools(q: str, limit: int = 5, force_vector: bool = False) -> dict[str, Any]:
        if limit <= 0:
            raise HTTPException(status_code=400, detail="limit must be positive")
        outcome = await runtime.search_tools(q, limit, force_vector=force_vector)
        return {
            "query": q,
            "confidence": outcome.confidence,
            "source": outcome.source,
            "vector_ready": runtime.discovery.vector_ready,
            "tools": [dataclasses.asdict(tool) for tool in outcome.tools],
        }

    return app
