from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from strata.core.errors import (
    KIND_STEP_LIMIT,
    KIND_TURN_FAILED,
    FailureDescriptor,
    InvocationFailure,
    RoutingUnresolved,
    TurnFailed,
)
from strata.core.tracing import TraceWriter, emit_trace
from strata.core.types import (
    OUTCOME_FAILED,
    ROLE_CONTENT,
    ROLE_MEMORY,
    ROLE_REASONING,
    TURN_CANCELLED,
    TURN_COMPLETED,
    TURN_FAILED,
    TURN_RUNNING,
    LayerExecution,
    Record,
    TurnMemory,
)
from strata.runtime.graph import END, PipelineGraph, Resolution, resolve_route
from strata.runtime.layers import build_input_snapshot, execute_layer
from strata.runtime.memory import consolidate
from strata.runtime.oracle import OracleDraw, RandomnessOracle
from strata.runtime.settings import RetryPolicy
from strata.runtime.store import TurnStateStore, split_turn_id

logger = logging.getLogger(__name__)


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(slots=True)
class TurnResult:
    turn_id: str
    status: str
    records: list[Record] = field(default_factory=list)
    text: str = ""
    incomplete: bool = False
    executions: list[LayerExecution] = field(default_factory=list)
    failure: FailureDescriptor | None = None

    @property
    def ok(self) -> bool:
        return self.status == TURN_COMPLETED


def _final_output(executions: list[LayerExecution]) -> tuple[list[Record], str]:
    """Records of the last call-shaped reasoning/content output, text of the last content."""
    records: list[Record] | None = None
    text: str | None = None
    for execution in reversed(executions):
        if execution.role not in (ROLE_CONTENT, ROLE_REASONING):
            continue
        if records is None and execution.parsed_output is not None:
            records = execution.records
        if text is None and execution.role == ROLE_CONTENT:
            text = execution.raw_output
    if text is None:
        text = next(
            (e.raw_output for e in reversed(executions) if e.role == ROLE_REASONING), ""
        )
    return records or [], text


def _draw_from_snapshot(snapshot: dict[str, Any]) -> OracleDraw | None:
    payload = snapshot.get("oracle")
    if not isinstance(payload, dict):
        return None
    return OracleDraw(
        threshold=int(payload["threshold"]),
        passed=bool(payload["passed"]),
        index=int(payload["index"]),
    )


@dataclass(slots=True)
class _TurnRun:
    """Mutable bookkeeping for one turn while the scheduler walks the graph.

    ``context`` holds the executions later layers see as upstream;
    ``next_sequence`` is the next free slot in the turn's append-only log.
    They differ only when a turn is resumed.
    """

    graph: PipelineGraph
    store: TurnStateStore
    backend: Any
    oracle: RandomnessOracle
    policy: RetryPolicy
    turn_id: str
    payload: Any
    memory: TurnMemory
    context: list[LayerExecution]
    next_sequence: int
    cancel: CancelToken | None
    tracer: TraceWriter | None
    clock: Callable[[], float]
    sleep: Callable[[float], None]
    current: str | None = None

    def finish(self, status: str, failure: FailureDescriptor | None = None) -> TurnResult:
        self.store.finish_turn(self.turn_id, status, failure, clock=self.clock)
        records, text = _final_output(self.context)
        emit_trace(
            self.tracer,
            "turn_done",
            {
                "turn_id": self.turn_id,
                "status": status,
                "layers": [execution.layer_id for execution in self.context],
                "failure": None if failure is None else failure.kind,
            },
        )
        if status != TURN_COMPLETED:
            records, text = [], ""
        return TurnResult(
            turn_id=self.turn_id,
            status=status,
            records=records,
            text=text,
            incomplete=any(not record.complete for record in records),
            executions=list(self.context),
            failure=failure,
        )

    def trace_route(self, layer_name: str, resolution: Resolution) -> None:
        if resolution.draw is not None:
            emit_trace(
                self.tracer,
                "oracle",
                {
                    "layer": layer_name,
                    "threshold": resolution.draw.threshold,
                    "passed": resolution.draw.passed,
                    "index": resolution.draw.index,
                },
            )
        emit_trace(
            self.tracer,
            "route",
            {
                "from": layer_name,
                "to": resolution.target,
                "kind": resolution.kind,
                "decision": resolution.decision,
            },
        )

    def _commit_memory(self, execution: LayerExecution) -> None:
        updated = consolidate(
            self.memory,
            self.context[:-1],
            execution,
            turn_index=split_turn_id(self.turn_id)[1],
            clock=self.clock,
        )
        self.store.commit_memory(self.turn_id, updated)
        emit_trace(
            self.tracer,
            "memory_commit",
            {"revision": updated.revision, "entities": sorted(updated.entities)},
        )

    def run(
        self,
        layer_name: str | None,
        draw: OracleDraw | None,
        replay_snapshot: dict[str, Any] | None = None,
        after: LayerExecution | None = None,
    ) -> TurnResult:
        """Walk the graph and always leave the turn finished.

        The walk starts at ``layer_name``, or at the route out of ``after``
        when resuming behind an already-logged execution.
        """
        try:
            return self._walk(layer_name, draw, replay_snapshot, after)
        except TurnFailed as exc:
            logger.error("turn %s failed at layer %s: %s", self.turn_id, exc.layer_id, exc)
            return self.finish(TURN_FAILED, exc.descriptor())
        except Exception as exc:  # noqa: BLE001
            if self.store.turn_status(self.turn_id)["status"] != TURN_RUNNING:
                raise
            logger.exception("turn %s stopped at layer %s", self.turn_id, self.current)
            return self.finish(
                TURN_FAILED,
                FailureDescriptor(
                    kind=KIND_TURN_FAILED,
                    message=f"{type(exc).__name__}: {exc}",
                    layer_id=self.current,
                    sequence_index=self.next_sequence,
                ),
            )

    def _walk(
        self,
        layer_name: str | None,
        draw: OracleDraw | None,
        replay_snapshot: dict[str, Any] | None,
        after: LayerExecution | None,
    ) -> TurnResult:
        if after is not None:
            self.current = after.layer_id
            resolution = resolve_route(self.graph.route(after.layer_id), after, self.oracle)
            self.trace_route(after.layer_id, resolution)
            layer_name, draw = resolution.target, resolution.draw
        current = layer_name
        steps = 0
        while current != END:
            self.current = current
            if self.cancel is not None and self.cancel.cancelled:
                logger.info("turn %s cancelled before layer %s", self.turn_id, current)
                return self.finish(TURN_CANCELLED)
            if steps >= self.graph.max_steps:
                raise TurnFailed(
                    f"turn exceeded {self.graph.max_steps} layer steps",
                    KIND_STEP_LIMIT,
                    layer_id=current,
                    sequence_index=self.next_sequence,
                )
            steps += 1
            layer = self.graph.layer(current)
            sequence_index = self.next_sequence
            if replay_snapshot is not None:
                snapshot, replay_snapshot = replay_snapshot, None
            else:
                snapshot = build_input_snapshot(
                    layer, self.payload, self.context, self.memory.snapshot(), draw
                )
            emit_trace(
                self.tracer,
                "layer_start",
                {"layer": layer.name, "role": layer.role, "sequence_index": sequence_index},
            )
            try:
                execution = execute_layer(
                    layer,
                    snapshot,
                    self.backend,
                    turn_id=self.turn_id,
                    sequence_index=sequence_index,
                    policy=self.policy,
                    clock=self.clock,
                    tracer=self.tracer,
                    sleep=self.sleep,
                )
            except InvocationFailure as exc:
                if exc.execution is not None:
                    self.store.append(exc.execution)
                    self.next_sequence += 1
                raise TurnFailed(
                    str(exc), layer_id=layer.name, sequence_index=sequence_index
                ) from exc
            self.store.append(execution)
            self.next_sequence += 1
            self.context.append(execution)
            emit_trace(
                self.tracer,
                "layer_done",
                {
                    "layer": layer.name,
                    "sequence_index": sequence_index,
                    "outcome": execution.outcome,
                    "attempts": execution.attempts,
                },
            )
            if layer.role == ROLE_MEMORY:
                self._commit_memory(execution)

            resolution = resolve_route(self.graph.route(layer.name), execution, self.oracle)
            self.trace_route(layer.name, resolution)
            draw = resolution.draw
            current = resolution.target
        return self.finish(TURN_COMPLETED)


def run_turn(
    graph: PipelineGraph,
    store: TurnStateStore,
    backend,
    session_id: str,
    payload: Any,
    *,
    oracle: RandomnessOracle,
    policy: RetryPolicy | None = None,
    cancel: CancelToken | None = None,
    tracer: TraceWriter | None = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> TurnResult:
    """Run one turn of ``graph`` for ``session_id``.

    Raises :class:`ConcurrencyViolation` when the session still has a
    running turn. Every other failure is reported through the result.
    """
    turn_id = store.begin_turn(session_id, payload, clock=clock)
    memory = store.read_memory(turn_id)
    emit_trace(
        tracer,
        "turn_start",
        {"turn_id": turn_id, "mode": graph.mode, "memory_revision": memory.revision},
    )
    run = _TurnRun(
        graph=graph,
        store=store,
        backend=backend,
        oracle=oracle,
        policy=policy or RetryPolicy(),
        turn_id=turn_id,
        payload=payload,
        memory=memory,
        context=[],
        next_sequence=0,
        cancel=cancel,
        tracer=tracer,
        clock=clock,
        sleep=sleep,
    )
    return run.run(graph.start, None)


def resume_turn(
    graph: PipelineGraph,
    store: TurnStateStore,
    backend,
    turn_id: str,
    from_sequence: int,
    *,
    oracle: RandomnessOracle,
    policy: RetryPolicy | None = None,
    cancel: CancelToken | None = None,
    tracer: TraceWriter | None = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> TurnResult:
    """Rerun a failed or cancelled turn starting at ``from_sequence``.

    Executions before ``from_sequence`` are kept as upstream context. When
    the log holds an execution at ``from_sequence`` its layer runs again
    with the stored input snapshot, unchanged; otherwise the route out of
    the last kept execution picks the layer. New executions are appended
    after the existing log.
    """
    stored = store.replay(turn_id)
    if from_sequence < 0 or from_sequence > len(stored):
        raise ValueError(f"from_sequence must be within [0, {len(stored)}]")
    prior = stored[:from_sequence]
    if any(execution.outcome == OUTCOME_FAILED for execution in prior):
        raise ValueError("cannot keep a failed layer execution as upstream context")
    unknown = sorted(
        {execution.layer_id for execution in stored[: from_sequence + 1]}
        - {layer.name for layer in graph.layers}
    )
    if unknown:
        raise RoutingUnresolved(
            f"turn '{turn_id}' ran layers this graph does not declare: {', '.join(unknown)}"
        )
    manifest = store.turn_status(turn_id)
    store.reopen_turn(turn_id)
    memory = store.read_memory(turn_id)
    emit_trace(
        tracer,
        "turn_resume",
        {"turn_id": turn_id, "from_sequence": from_sequence, "log_length": len(stored)},
    )
    run = _TurnRun(
        graph=graph,
        store=store,
        backend=backend,
        oracle=oracle,
        policy=policy or RetryPolicy(),
        turn_id=turn_id,
        payload=manifest.get("payload"),
        memory=memory,
        context=list(prior),
        next_sequence=len(stored),
        cancel=cancel,
        tracer=tracer,
        clock=clock,
        sleep=sleep,
    )
    if from_sequence < len(stored):
        target = stored[from_sequence]
        return run.run(
            target.layer_id,
            _draw_from_snapshot(target.input_snapshot),
            replay_snapshot=target.input_snapshot,
        )
    if not prior:
        return run.run(graph.start, None)
    return run.run(None, None, after=prior[-1])


def replay_executions(
    graph: PipelineGraph,
    store: TurnStateStore,
    backend,
    turn_id: str,
    from_sequence: int = 0,
    *,
    policy: RetryPolicy | None = None,
    clock: Callable[[], float] = time.time,
) -> list[LayerExecution]:
    """Re-execute stored input snapshots without persisting anything."""
    replayed: list[LayerExecution] = []
    for execution in store.replay(turn_id)[from_sequence:]:
        layer = graph.layer(execution.layer_id)
        replayed.append(
            execute_layer(
                layer,
                execution.input_snapshot,
                backend,
                turn_id=execution.turn_id,
                sequence_index=execution.sequence_index,
                policy=policy or RetryPolicy(timeout_s=None, backoff_s=0.0),
                clock=clock,
            )
        )
    return replayed
