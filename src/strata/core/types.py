from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, List

ROLE_REASONING = "reasoning"
ROLE_NAVIGATOR = "navigator"
ROLE_CONTENT = "content"
ROLE_CORRECTION = "correction"
ROLE_MEMORY = "memory"
ROLES = (ROLE_REASONING, ROLE_NAVIGATOR, ROLE_CONTENT, ROLE_CORRECTION, ROLE_MEMORY)

OUTCOME_SUCCESS = "success"
OUTCOME_PARSE_PARTIAL = "parse_partial"
OUTCOME_FAILED = "failed"
OUTCOMES = (OUTCOME_SUCCESS, OUTCOME_PARSE_PARTIAL, OUTCOME_FAILED)

TURN_RUNNING = "running"
TURN_COMPLETED = "completed"
TURN_FAILED = "failed"
TURN_CANCELLED = "cancelled"
TURN_REJECTED = "rejected"
TURN_STATUSES = (TURN_RUNNING, TURN_COMPLETED, TURN_FAILED, TURN_CANCELLED)


@dataclass(slots=True)
class Record:
    fields: dict[str, Any] = field(default_factory=dict)
    complete: bool = False

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        return {"fields": copy.deepcopy(self.fields), "complete": self.complete}


@dataclass(frozen=True, slots=True)
class LayerExecution:
    """One run of one layer within one turn. Never mutated once written."""

    layer_id: str
    role: str
    turn_id: str
    sequence_index: int
    input_snapshot: dict[str, Any]
    raw_output: str
    parsed_output: List[Record] | None
    started_at: float
    completed_at: float
    outcome: str
    attempts: int = 1
    error: str | None = None

    @property
    def records(self) -> List[Record]:
        return list(self.parsed_output or [])


@dataclass(slots=True)
class TurnMemory:
    entities: dict[str, dict[str, Any]] = field(default_factory=dict)
    revision: int = 0
    turn_index: int | None = None
    updated_ts: float = 0.0

    def snapshot(self) -> "TurnMemory":
        return copy.deepcopy(self)
