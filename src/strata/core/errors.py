"""Error taxonomy shared by the parser, scheduler and store.

Parse skips and incomplete records are not exceptions: a skipped line only
lowers output completeness and an incomplete record is returned with
``complete=False``. Everything below crosses the turn boundary or stops
the process at startup.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from strata.core.types import LayerExecution

KIND_TURN_FAILED = "turn_failed"
KIND_STEP_LIMIT = "step_limit"
KIND_CONCURRENCY_VIOLATION = "concurrency_violation"


class StrataError(Exception):
    pass


class ConfigurationError(StrataError):
    pass


class RoutingUnresolved(ConfigurationError):
    pass


class InvocationFailure(StrataError):
    def __init__(self, message: str, execution: "LayerExecution | None" = None) -> None:
        super().__init__(message)
        self.execution = execution


class TurnFailed(StrataError):
    """Ends the running turn as ``failed``; never escapes the scheduler."""

    def __init__(
        self,
        message: str,
        kind: str = KIND_TURN_FAILED,
        *,
        layer_id: str | None = None,
        sequence_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.layer_id = layer_id
        self.sequence_index = sequence_index

    def descriptor(self) -> "FailureDescriptor":
        return FailureDescriptor(
            kind=self.kind,
            message=str(self),
            layer_id=self.layer_id,
            sequence_index=self.sequence_index,
        )


class ConcurrencyViolation(StrataError):
    pass


@dataclass(frozen=True, slots=True)
class FailureDescriptor:
    kind: str
    message: str
    layer_id: str | None = None
    sequence_index: int | None = None
