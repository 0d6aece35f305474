from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from strata.backends import get_backend
from strata.core.errors import KIND_CONCURRENCY_VIOLATION, ConcurrencyViolation, FailureDescriptor
from strata.core.tracing import TraceWriter
from strata.core.types import (
    ROLE_CONTENT,
    ROLE_CORRECTION,
    ROLE_MEMORY,
    ROLE_REASONING,
    TURN_REJECTED,
)
from strata.runtime.graph import END, Fixed, Hybrid, PipelineGraph, issue_reported
from strata.runtime.graph_config import load_graph
from strata.runtime.layers import OUTPUT_CALLS, LayerSpec
from strata.runtime.oracle import RandomnessOracle
from strata.runtime.scheduler import CancelToken, TurnResult, run_turn
from strata.runtime.segmenter import RecordSchema
from strata.runtime.settings import StrataSettings, load_settings
from strata.runtime.store import TurnStateStore

ORDER_SCHEMA = RecordSchema(
    terminal="status",
    group_fields=frozenset({"flavors"}),
    list_fields=frozenset({"flavors"}),
)

_STORES: dict[Path, TurnStateStore] = {}
_ORACLES: dict[int | None, RandomnessOracle] = {}
_GRAPHS: dict[Path | None, PipelineGraph] = {}
_SHARED_LOCK = threading.Lock()


def default_graph() -> PipelineGraph:
    """Order-suggestion pipeline used when no graph file is configured."""
    no_prose = "Do not explain yourself."
    layers = [
        LayerSpec(
            name="reason",
            role=ROLE_REASONING,
            system_prompt=(
                "Decide which order to suggest. Emit flavors(...), price(...) and "
                f"status(...) calls, one per line. {no_prose}"
            ),
            output=OUTPUT_CALLS,
            schema=ORDER_SCHEMA,
        ),
        LayerSpec(
            name="content",
            role=ROLE_CONTENT,
            system_prompt="Describe the decided order to the customer.",
        ),
        LayerSpec(
            name="correct",
            role=ROLE_CORRECTION,
            system_prompt=(
                "Check the description against the decision. Emit verdict(\"ok\") or "
                "violation(\"constraint\", \"where\") calls, and fact(entity, attribute, "
                f"value) for anything worth remembering. {no_prose}"
            ),
            connector=True,
        ),
        LayerSpec(
            name="memorize",
            role=ROLE_MEMORY,
            system_prompt=(
                "Consolidate memory. Emit remember(entity, attribute, value) or "
                f"forget(entity) calls. {no_prose}"
            ),
        ),
    ]
    routes = {
        "reason": Fixed("content"),
        "content": Fixed("correct"),
        "correct": Hybrid(
            next="memorize",
            trigger=issue_reported(),
            override=Fixed("content"),
        ),
        "memorize": Fixed(END),
    }
    return PipelineGraph(layers=tuple(layers), start="reason", routes=routes, max_steps=12)


def shared_store(base_dir: Path) -> TurnStateStore:
    key = base_dir.resolve()
    with _SHARED_LOCK:
        store = _STORES.get(key)
        if store is None:
            store = TurnStateStore(base_dir)
            _STORES[key] = store
        return store


def shared_oracle(seed: int | None) -> RandomnessOracle:
    with _SHARED_LOCK:
        oracle = _ORACLES.get(seed)
        if oracle is None:
            oracle = RandomnessOracle(seed)
            _ORACLES[seed] = oracle
        return oracle


def build_graph(settings: StrataSettings) -> PipelineGraph:
    if settings.graph_path is not None:
        return load_graph(settings.graph_path)
    return default_graph()


def shared_graph(settings: StrataSettings) -> PipelineGraph:
    """Process-wide graph: each graph file is read and validated once."""
    key = settings.graph_path.resolve() if settings.graph_path is not None else None
    with _SHARED_LOCK:
        graph = _GRAPHS.get(key)
        if graph is None:
            graph = build_graph(settings)
            _GRAPHS[key] = graph
        return graph


def submit_turn(
    session_id: str,
    payload: Any,
    backend=None,
    base_dir: Path | None = None,
    *,
    graph: PipelineGraph | None = None,
    oracle: RandomnessOracle | None = None,
    settings: StrataSettings | None = None,
    cancel: CancelToken | None = None,
) -> TurnResult:
    settings = settings or load_settings()
    if backend is None:
        backend = get_backend(settings.backend)
    data_root = base_dir or settings.data_root
    store = shared_store(data_root / "sessions")
    tracer = TraceWriter(session_id, base_dir=data_root / "traces")
    try:
        return run_turn(
            graph or shared_graph(settings),
            store,
            backend,
            session_id,
            payload,
            oracle=oracle or shared_oracle(settings.oracle_seed),
            policy=settings.retry_policy(),
            cancel=cancel,
            tracer=tracer,
        )
    except ConcurrencyViolation as exc:
        return TurnResult(
            turn_id="",
            status=TURN_REJECTED,
            failure=FailureDescriptor(kind=KIND_CONCURRENCY_VIOLATION, message=str(exc)),
        )
