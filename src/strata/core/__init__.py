"""Core data contracts and utilities."""

from .errors import (
    ConcurrencyViolation,
    ConfigurationError,
    FailureDescriptor,
    InvocationFailure,
    RoutingUnresolved,
    StrataError,
    TurnFailed,
)
from .tracing import TraceEvent, TraceWriter, emit_trace
from .types import LayerExecution, Record, TurnMemory

__all__ = [
    "ConcurrencyViolation",
    "ConfigurationError",
    "FailureDescriptor",
    "InvocationFailure",
    "LayerExecution",
    "Record",
    "RoutingUnresolved",
    "StrataError",
    "TraceEvent",
    "TraceWriter",
    "TurnFailed",
    "TurnMemory",
    "emit_trace",
]
