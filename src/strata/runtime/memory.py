from __future__ import annotations

import json
import time
from typing import Any, Iterable

from strata.core.types import ROLE_CORRECTION, LayerExecution, TurnMemory
from strata.runtime.calls import FunctionCall, parse_calls

REMEMBER = "remember"
FORGET = "forget"
FACT = "fact"


def _remember(memory: TurnMemory, values: list[Any]) -> bool:
    if len(values) < 3:
        return False
    entity, attribute, value = str(values[0]), str(values[1]), values[2]
    if len(values) > 3:
        value = list(values[2:])
    memory.entities.setdefault(entity, {})[attribute] = value
    return True


def _forget(memory: TurnMemory, values: list[Any]) -> bool:
    if not values:
        return False
    entity = str(values[0])
    if entity not in memory.entities:
        return False
    if len(values) == 1:
        del memory.entities[entity]
        return True
    attributes = memory.entities[entity]
    removed = attributes.pop(str(values[1]), None) is not None
    if not attributes:
        del memory.entities[entity]
    return removed


def apply_memory_calls(memory: TurnMemory, calls: Iterable[FunctionCall]) -> int:
    applied = 0
    for call in calls:
        if call.name in (REMEMBER, FACT):
            applied += _remember(memory, call.values)
        elif call.name == FORGET:
            applied += _forget(memory, call.values)
    return applied


def connector_facts(executions: Iterable[LayerExecution]) -> list[FunctionCall]:
    facts: list[FunctionCall] = []
    for execution in executions:
        if execution.role != ROLE_CORRECTION or not execution.input_snapshot.get("connector"):
            continue
        facts.extend(call for call in parse_calls(execution.raw_output) if call.name == FACT)
    return facts


def consolidate(
    memory: TurnMemory,
    executions: Iterable[LayerExecution],
    memory_execution: LayerExecution,
    *,
    turn_index: int,
    clock=time.time,
) -> TurnMemory:
    """Build the next memory revision; ``memory`` itself is left untouched."""
    updated = memory.snapshot()
    apply_memory_calls(updated, connector_facts(executions))
    apply_memory_calls(updated, parse_calls(memory_execution.raw_output))
    updated.revision = memory.revision + 1
    updated.turn_index = turn_index
    updated.updated_ts = clock()
    return updated


def format_memory(memory: TurnMemory) -> str:
    if not memory.entities:
        return "MEMORY:\n{}"
    return "MEMORY:\n" + json.dumps(memory.entities, ensure_ascii=False, sort_keys=True)
