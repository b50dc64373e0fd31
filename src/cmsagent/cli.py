from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any

from cmsagent.backends import FakeBackend, list_backends
from cmsagent.config import AgentSettings, load_settings
from cmsagent.core.errors import CheckpointNotFoundError, UnknownModeError
from cmsagent.runtime.checkpoints import checkpoint_to_dict
from cmsagent.runtime.context import AgentRuntime, build_runtime
from cmsagent.runtime.controller import TurnResult
from cmsagent.runtime.modes import DEFAULT_MODE, MODES


def _build_smoke_backend() -> FakeBackend:
    backend = FakeBackend()
    backend.extend_responses(
        [
            {
                "text": "Creating the home page first.",
                "tool_calls": [
                    {"id": "t1", "tool": "createPage", "args": {"name": "Home", "slug": "home"}}
                ],
            },
            {
                "text": "Verifying the page exists.",
                "tool_calls": [{"id": "t2", "tool": "getPage", "args": {"slug": "home"}}],
            },
            "Smoke run complete. Page: {{TOOL_OUTPUT}}",
        ]
    )
    return backend


def _settings_from_args(args: argparse.Namespace) -> AgentSettings:
    settings = load_settings()
    overrides: dict[str, Any] = {}
    if getattr(args, "data_root", None):
        overrides["data_root"] = Path(args.data_root)
    if getattr(args, "backend", None):
        overrides["backend"] = args.backend
    if getattr(args, "model", None):
        overrides["model"] = args.model
    if overrides:
        settings = dataclasses.replace(settings, **overrides)
    return settings


def _build_runtime(args: argparse.Namespace, **kwargs: Any) -> AgentRuntime:
    return build_runtime(_settings_from_args(args), **kwargs)


def _print_result(result: TurnResult) -> int:
    print(result.final_text)
    if result.status != "completed":
        detail = f": {result.error}" if result.error else ""
        print(
            f"[{result.status}] after {len(result.steps)} step(s){detail}",
            file=sys.stderr,
        )
    return 1 if result.status == "failed" else 0


def _run_command(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    try:
        result = asyncio.run(runtime.run_turn(args.session, args.text, args.mode))
    except UnknownModeError as exc:
        raise SystemExit(str(exc)) from exc
    return _print_result(result)


def _repl_command(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    session_id = args.session
    mode = args.mode
    while True:
        try:
            line = input(f"[{mode}]> ")
        except EOFError:
            break
        text = line.strip()
        if text == "/exit":
            break
        if not text:
            continue
        if text.startswith("/mode "):
            candidate = text.split(None, 1)[1]
            if candidate not in MODES:
                print(f"Unknown mode '{candidate}'. Available: {', '.join(sorted(MODES))}")
            else:
                mode = candidate
            continue
        result = asyncio.run(runtime.run_turn(session_id, text, mode))
        _print_result(result)
    return 0


def _resume_command(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    try:
        result = asyncio.run(runtime.resume(args.session))
    except CheckpointNotFoundError as exc:
        raise SystemExit(str(exc)) from exc
    return _print_result(result)


def _smoke_command(args: argparse.Namespace) -> int:
    data_root = Path(args.data_root) if args.data_root else Path("data") / "smoke"
    settings = dataclasses.replace(load_settings(), data_root=data_root, backend="fake")
    runtime = build_runtime(settings, backend=_build_smoke_backend())
    result = asyncio.run(runtime.run_turn(args.session, "Create a home page", DEFAULT_MODE))

    trace_path = data_root / "traces" / f"{args.session}__{result.trace_id}.jsonl"
    print("Smoke run complete.")
    print(f"Status: {result.status} in {len(result.steps)} step(s)")
    print(f"Final answer: {result.final_text}")
    print(f"Trace file: {trace_path}")
    return 0 if result.status == "completed" else 1


def _checkpoints_command(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    manager = runtime.checkpoints
    if args.clear:
        manager.clear(args.clear)
        print(f"Cleared checkpoint for {args.clear}")
        return 0
    if args.show:
        checkpoint = manager.restore(args.show)
        if checkpoint is None:
            raise SystemExit(f"No checkpoint for session '{args.show}'")
        print(json.dumps(checkpoint_to_dict(checkpoint), indent=2))
        return 0
    checkpoints = manager.list_checkpoints()
    if not checkpoints:
        print("No checkpoints.")
        return 0
    for checkpoint in checkpoints:
        print(
            f"{checkpoint.session_id}\tmode={checkpoint.mode}\tphase={checkpoint.phase}\t"
            f"step={checkpoint.step_number}/{checkpoint.max_steps}\t"
            f"{checkpoint.estimated_completion:.0f}%"
        )
    return 0


def _search_tools_command(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)

    async def _search():
        if args.force_vector:
            runtime.start()
            await runtime.discovery.wait_until_ready()
        return await runtime.search_tools(args.query, args.limit, force_vector=args.force_vector)

    outcome = asyncio.run(_search())
    if args.json:
        payload = {
            "confidence": outcome.confidence,
            "source": outcome.source,
            "tools": [dataclasses.asdict(tool) for tool in outcome.tools],
        }
        print(json.dumps(payload, indent=2))
        return 0
    print(f"source={outcome.source} confidence={outcome.confidence:.2f}")
    for tool in outcome.tools:
        related = f" (related: {', '.join(tool.related_tools)})" if tool.related_tools else ""
        print(f"{tool.score:.3f}\t{tool.name}{related}")
    return 0


def _context_stats_command(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    stats = runtime.context_stats(args.session, args.model)
    print(json.dumps(stats, indent=2))
    return 0


def _serve_command(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError as exc:
        raise SystemExit("uvicorn is required to run the admin server") from exc
    from cmsagent.admin.app import create_app

    app = create_app(runtime=_build_runtime(args))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def _add_runtime_args(parser: argparse.ArgumentParser, *, backend: bool = True) -> None:
    parser.add_argument("--data-root")
    if backend:
        parser.add_argument("--backend", choices=list_backends())
        parser.add_argument("--model")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cmsagent")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a single turn")
    run_parser.add_argument("--session", default="demo-1")
    run_parser.add_argument("--text", required=True)
    run_parser.add_argument("--mode", default=DEFAULT_MODE, choices=sorted(MODES))
    _add_runtime_args(run_parser)
    run_parser.set_defaults(func=_run_command)

    repl_parser = subparsers.add_parser("repl", help="Run an interactive REPL")
    repl_parser.add_argument("--session", default="demo-1")
    repl_parser.add_argument("--mode", default=DEFAULT_MODE, choices=sorted(MODES))
    _add_runtime_args(repl_parser)
    repl_parser.set_defaults(func=_repl_command)

    resume_parser = subparsers.add_parser("resume", help="Resume a turn from its checkpoint")
    resume_parser.add_argument("--session", required=True)
    _add_runtime_args(resume_parser)
    resume_parser.set_defaults(func=_resume_command)

    smoke_parser = subparsers.add_parser("smoke", help="Run the scripted smoke demo")
    smoke_parser.add_argument("--session", default="smoke-1")
    smoke_parser.add_argument("--data-root")
    smoke_parser.set_defaults(func=_smoke_command)

    checkpoints_parser = subparsers.add_parser("checkpoints", help="List or manage checkpoints")
    action = checkpoints_parser.add_mutually_exclusive_group()
    action.add_argument("--show", metavar="SESSION")
    action.add_argument("--clear", metavar="SESSION")
    _add_runtime_args(checkpoints_parser, backend=False)
    checkpoints_parser.set_defaults(func=_checkpoints_command)

    search_parser = subparsers.add_parser("search-tools", help="Rank tools for a query")
    search_parser.add_argument("query")
    search_parser.add_argument("--limit", type=int, default=5)
    search_parser.add_argument("--force-vector", action="store_true")
    search_parser.add_argument("--json", action="store_true")
    _add_runtime_args(search_parser, backend=False)
    search_parser.set_defaults(func=_search_tools_command)

    stats_parser = subparsers.add_parser("context-stats", help="Token usage for a session")
    stats_parser.add_argument("--session", required=True)
    stats_parser.add_argument("--model")
    stats_parser.add_argument("--data-root")
    stats_parser.set_defaults(func=_context_stats_command)

    serve_parser = subparsers.add_parser("serve", help="Serve the admin API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    _add_runtime_args(serve_parser)
    serve_parser.set_defaults(func=_serve_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
