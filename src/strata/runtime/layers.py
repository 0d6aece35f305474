from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from strata.core.errors import ConfigurationError, InvocationFailure
from strata.core.tracing import TraceWriter, emit_trace
from strata.core.types import (
    OUTCOME_FAILED,
    OUTCOME_PARSE_PARTIAL,
    OUTCOME_SUCCESS,
    ROLE_CORRECTION,
    ROLE_MEMORY,
    ROLE_NAVIGATOR,
    ROLES,
    LayerExecution,
    Record,
    TurnMemory,
)
from strata.runtime.calls import parse_calls
from strata.runtime.memory import format_memory
from strata.runtime.oracle import OracleDraw
from strata.runtime.segmenter import RecordSchema, segment_calls
from strata.runtime.settings import RetryPolicy

logger = logging.getLogger(__name__)

OUTPUT_TEXT = "text"
OUTPUT_CALLS = "calls"

VIOLATION = "violation"
VERDICT = "verdict"


@dataclass(frozen=True, slots=True)
class LayerSpec:
    name: str
    role: str
    system_prompt: str
    output: str = OUTPUT_TEXT
    schema: RecordSchema | None = None
    params: dict[str, Any] = field(default_factory=dict)
    max_attempts: int | None = None
    timeout_s: float | None = None
    connector: bool = False
    include_memory: bool = True

    def __post_init__(self) -> None:
        if not self.name or self.name.startswith("$"):
            raise ConfigurationError(f"invalid layer name {self.name!r}")
        if self.role not in ROLES:
            raise ConfigurationError(f"layer '{self.name}' has unknown role '{self.role}'")
        if self.output not in (OUTPUT_TEXT, OUTPUT_CALLS):
            raise ConfigurationError(f"layer '{self.name}' has unknown output '{self.output}'")
        if self.connector and self.role != ROLE_CORRECTION:
            raise ConfigurationError(f"layer '{self.name}': connector requires the correction role")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ConfigurationError(f"layer '{self.name}': max_attempts must be >= 1")


def _upstream_entries(role: str, upstream: Iterable[LayerExecution]) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    for execution in upstream:
        if execution.outcome == OUTCOME_FAILED:
            continue
        # navigator decisions only steer routing; the memory layer still sees them
        if execution.role == ROLE_NAVIGATOR and role != ROLE_MEMORY:
            continue
        entries.append(
            {
                "layer": execution.layer_id,
                "role": execution.role,
                "sequence_index": execution.sequence_index,
                "text": execution.raw_output,
            }
        )
    return entries


def _format_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _compose_prompt(
    layer: LayerSpec,
    payload: Any,
    upstream: list[dict[str, Any]],
    memory: TurnMemory | None,
    oracle_draw: OracleDraw | None,
) -> str:
    parts = [layer.system_prompt]
    if memory is not None:
        parts.append(format_memory(memory))
    if oracle_draw is not None:
        verdict = "PASSED" if oracle_draw.passed else "FAILED"
        parts.append(f"ORACLE:\nthreshold={oracle_draw.threshold}/1000 outcome={verdict}")
    if upstream:
        upstream_text = "\n".join(f"{entry['layer']}: {entry['text']}" for entry in upstream)
        parts.append(f"UPSTREAM:\n{upstream_text}")
    parts.append(f"INPUT:\n{_format_payload(payload)}")
    return "\n\n".join(part for part in parts if part)


def build_input_snapshot(
    layer: LayerSpec,
    payload: Any,
    upstream: Iterable[LayerExecution],
    memory: TurnMemory,
    oracle_draw: OracleDraw | None = None,
) -> dict[str, Any]:
    entries = _upstream_entries(layer.role, upstream)
    visible_memory = memory if layer.include_memory else None
    return {
        "layer": layer.name,
        "role": layer.role,
        "connector": layer.connector,
        "payload": payload,
        "upstream": entries,
        "memory_revision": memory.revision,
        "oracle": (
            None
            if oracle_draw is None
            else {
                "threshold": oracle_draw.threshold,
                "passed": oracle_draw.passed,
                "index": oracle_draw.index,
            }
        ),
        "prompt": _compose_prompt(layer, payload, entries, visible_memory, oracle_draw),
    }


def _invoke(backend, prompt: str, params: dict[str, Any], timeout_s: float | None) -> str:
    """Call the backend, failing the attempt once ``timeout_s`` has passed.

    ``params["timeout_s"]`` tells the backend its own deadline. A timed-out
    call is waited out and its answer dropped, so it never overlaps the
    retry or the next layer.
    """
    if timeout_s is None:
        return backend.complete(prompt, params=params)
    params.setdefault("timeout_s", timeout_s)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="strata-invoke")
    future = pool.submit(backend.complete, prompt, params=params)
    try:
        return future.result(timeout=timeout_s)
    except FutureTimeoutError as exc:
        raise TimeoutError(f"model invocation exceeded {timeout_s}s") from exc
    finally:
        pool.shutdown(wait=True)


def parse_layer_output(
    layer: LayerSpec, raw_output: str, tracer: TraceWriter | None = None
) -> tuple[list[Record] | None, str]:
    if layer.output != OUTPUT_CALLS:
        return None, OUTCOME_SUCCESS
    schema = layer.schema or RecordSchema()
    records = segment_calls(parse_calls(raw_output, tracer=tracer, layer=layer.name), schema)
    if not records:
        return records, OUTCOME_PARSE_PARTIAL
    if schema.terminal is not None and not all(record.complete for record in records):
        return records, OUTCOME_PARSE_PARTIAL
    return records, OUTCOME_SUCCESS


def execute_layer(
    layer: LayerSpec,
    snapshot: dict[str, Any],
    backend,
    *,
    turn_id: str,
    sequence_index: int,
    policy: RetryPolicy,
    clock: Callable[[], float] = time.time,
    tracer: TraceWriter | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> LayerExecution:
    """Run one layer against the model boundary.

    Every attempt sends the identical ``snapshot["prompt"]``. When all
    attempts fail an :class:`InvocationFailure` is raised carrying a
    ``failed`` execution for the caller to persist.
    """
    max_attempts = layer.max_attempts or policy.max_attempts
    timeout_s = layer.timeout_s if layer.timeout_s is not None else policy.timeout_s
    prompt = snapshot["prompt"]
    params = dict(layer.params)
    params.setdefault("role", layer.name)
    started_at = clock()
    last_error = "no attempts made"
    for attempt in range(1, max_attempts + 1):
        emit_trace(
            tracer,
            "llm_req",
            {"layer": layer.name, "attempt": attempt, "prompt": prompt},
        )
        try:
            raw_output = _invoke(backend, prompt, dict(params), timeout_s)
        except Exception as exc:  # noqa: BLE001
            last_error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "layer %s attempt %d/%d failed: %s", layer.name, attempt, max_attempts, last_error
            )
            emit_trace(
                tracer,
                "invoke_retry",
                {"layer": layer.name, "attempt": attempt, "error": last_error},
            )
            if attempt < max_attempts and policy.backoff_s > 0:
                sleep(policy.backoff_s * 2 ** (attempt - 1))
            continue
        if not isinstance(raw_output, str):
            raw_output = "" if raw_output is None else str(raw_output)
        emit_trace(tracer, "llm_done", {"layer": layer.name, "response": raw_output})
        parsed_output, outcome = parse_layer_output(layer, raw_output, tracer)
        return LayerExecution(
            layer_id=layer.name,
            role=layer.role,
            turn_id=turn_id,
            sequence_index=sequence_index,
            input_snapshot=snapshot,
            raw_output=raw_output,
            parsed_output=parsed_output,
            started_at=started_at,
            completed_at=clock(),
            outcome=outcome,
            attempts=attempt,
        )

    failed = LayerExecution(
        layer_id=layer.name,
        role=layer.role,
        turn_id=turn_id,
        sequence_index=sequence_index,
        input_snapshot=snapshot,
        raw_output="",
        parsed_output=None,
        started_at=started_at,
        completed_at=clock(),
        outcome=OUTCOME_FAILED,
        attempts=max_attempts,
        error=last_error,
    )
    raise InvocationFailure(
        f"layer '{layer.name}' failed after {max_attempts} attempts: {last_error}", failed
    )


def correction_issues(execution: LayerExecution) -> list[dict[str, Any]]:
    issues: list[dict[str, Any]] = []
    for call in parse_calls(execution.raw_output):
        if call.name != VIOLATION:
            continue
        values = call.values
        issues.append(
            {
                "constraint": str(values[0]),
                "location": str(values[1]) if len(values) > 1 else None,
            }
        )
    return issues


def has_issue(execution: LayerExecution) -> bool:
    return bool(correction_issues(execution))
