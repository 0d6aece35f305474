from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from strata.backends import get_backend, list_backends
from strata.core.errors import ConfigurationError
from strata.core.tracing import TraceWriter
from strata.runtime import controller
from strata.runtime.graph import PipelineGraph
from strata.runtime.graph_config import load_graph
from strata.runtime.scheduler import TurnResult, replay_executions, resume_turn
from strata.runtime.segmenter import RecordSchema, segment_text
from strata.runtime.settings import load_settings
from strata.runtime.store import execution_to_dict, split_turn_id


def _resolve_data_root(args: argparse.Namespace) -> Path:
    if getattr(args, "data_root", None):
        return Path(args.data_root)
    return load_settings().data_root


def _resolve_graph(args: argparse.Namespace) -> PipelineGraph:
    if getattr(args, "graph", None):
        return load_graph(Path(args.graph))
    return controller.build_graph(load_settings())


def _build_backend(args: argparse.Namespace):
    backend_name = getattr(args, "backend", None) or load_settings().backend
    backend_kwargs: dict[str, Any] = {}
    if getattr(args, "model", None):
        backend_kwargs["model"] = args.model
    if getattr(args, "llama_url", None) and backend_name == "llama":
        backend_kwargs["base_url"] = args.llama_url
    return get_backend(backend_name, **backend_kwargs)


def _parse_payload(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _print_result(result: TurnResult) -> int:
    payload = {
        "turn_id": result.turn_id,
        "status": result.status,
        "records": [record.to_dict() for record in result.records],
        "incomplete": result.incomplete,
        "failure": asdict(result.failure) if result.failure is not None else None,
    }
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    if result.text:
        print(result.text)
    return 0 if result.ok else 1


def _run_command(args: argparse.Namespace) -> int:
    result = controller.submit_turn(
        args.session,
        _parse_payload(args.text),
        _build_backend(args),
        base_dir=_resolve_data_root(args),
        graph=_resolve_graph(args),
    )
    return _print_result(result)


def _parse_command(args: argparse.Namespace) -> int:
    text = Path(args.file).read_text(encoding="utf-8") if args.file else sys.stdin.read()
    schema = RecordSchema(
        terminal=args.terminal,
        group_fields=frozenset(args.group or []),
        list_fields=frozenset(args.list_field or []),
    )
    records = segment_text(text, schema)
    print(json.dumps([record.to_dict() for record in records], indent=2, ensure_ascii=False))
    return 0


def _validate_command(args: argparse.Namespace) -> int:
    try:
        graph = load_graph(Path(args.graph))
    except ConfigurationError as exc:
        print(f"invalid graph: {exc}", file=sys.stderr)
        return 2
    print(f"ok: {len(graph.layers)} layers, start={graph.start}, mode={graph.mode}")
    return 0


def _replay_command(args: argparse.Namespace) -> int:
    store = controller.shared_store(_resolve_data_root(args) / "sessions")
    if args.execute:
        executions = replay_executions(
            _resolve_graph(args),
            store,
            _build_backend(args),
            args.turn,
            args.from_sequence,
        )
    else:
        executions = store.replay(args.turn)[args.from_sequence :]
    for execution in executions:
        print(json.dumps(execution_to_dict(execution), ensure_ascii=False))
    return 0


def _resume_command(args: argparse.Namespace) -> int:
    data_root = _resolve_data_root(args)
    settings = load_settings()
    session_id, _index = split_turn_id(args.turn)
    result = resume_turn(
        _resolve_graph(args),
        controller.shared_store(data_root / "sessions"),
        _build_backend(args),
        args.turn,
        args.from_sequence,
        oracle=controller.shared_oracle(settings.oracle_seed),
        policy=settings.retry_policy(),
        tracer=TraceWriter(session_id, base_dir=data_root / "traces"),
    )
    return _print_result(result)


def _abort_command(args: argparse.Namespace) -> int:
    store = controller.shared_store(_resolve_data_root(args) / "sessions")
    store.abort_turn(args.turn)
    print(f"aborted {args.turn}")
    return 0


def _turns_command(args: argparse.Namespace) -> int:
    store = controller.shared_store(_resolve_data_root(args) / "sessions")
    for manifest in store.list_turns(args.session):
        print(f"{manifest['turn_id']}\t{manifest['status']}")
    return 0


def _serve_command(args: argparse.Namespace) -> int:
    if getattr(args, "data_root", None):
        os.environ["DATA_ROOT"] = args.data_root
    try:
        import uvicorn
    except ImportError as exc:
        raise SystemExit("uvicorn is required to run the admin app") from exc
    uvicorn.run("strata.admin.app:create_app", host=args.host, port=args.port, factory=True)
    return 0


def _add_backend_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--backend", choices=list_backends())
    parser.add_argument("--model")
    parser.add_argument("--llama-url")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="strata")
    parser.add_argument("--data-root")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a single turn")
    run_parser.add_argument("--session", default="demo-1")
    run_parser.add_argument("--text", required=True, help="Turn payload (JSON or plain text)")
    run_parser.add_argument("--graph")
    _add_backend_args(run_parser)
    run_parser.set_defaults(func=_run_command)

    parse_parser = subparsers.add_parser("parse", help="Segment call text into records")
    parse_parser.add_argument("--file")
    parse_parser.add_argument("--terminal")
    parse_parser.add_argument("--group", action="append")
    parse_parser.add_argument("--list-field", action="append")
    parse_parser.set_defaults(func=_parse_command)

    validate_parser = subparsers.add_parser("validate", help="Validate a pipeline graph file")
    validate_parser.add_argument("graph")
    validate_parser.set_defaults(func=_validate_command)

    replay_parser = subparsers.add_parser("replay", help="Print or re-execute a turn log")
    replay_parser.add_argument("turn")
    replay_parser.add_argument("--from-sequence", type=int, default=0)
    replay_parser.add_argument("--execute", action="store_true")
    replay_parser.add_argument("--graph")
    _add_backend_args(replay_parser)
    replay_parser.set_defaults(func=_replay_command)

    resume_parser = subparsers.add_parser("resume", help="Rerun a failed or cancelled turn")
    resume_parser.add_argument("turn")
    resume_parser.add_argument("--from-sequence", type=int, required=True)
    resume_parser.add_argument("--graph")
    _add_backend_args(resume_parser)
    resume_parser.set_defaults(func=_resume_command)

    abort_parser = subparsers.add_parser("abort", help="Mark a stuck running turn failed")
    abort_parser.add_argument("turn")
    abort_parser.set_defaults(func=_abort_command)

    turns_parser = subparsers.add_parser("turns", help="List the turns of a session")
    turns_parser.add_argument("--session", required=True)
    turns_parser.set_defaults(func=_turns_command)

    serve_parser = subparsers.add_parser("serve", help="Serve the admin app")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=9000)
    serve_parser.set_defaults(func=_serve_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
