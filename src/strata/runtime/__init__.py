"""Parsing, routing and turn execution."""

from . import calls, segmenter
from .calls import FunctionCall, format_call, parse_call_line, parse_calls
from .segmenter import RecordSchema, segment_calls, segment_text
from .oracle import RandomnessOracle
from .settings import RetryPolicy, StrataSettings, load_settings
from .layers import LayerSpec, execute_layer
from .graph import END, Branch, Chance, Fixed, Hybrid, PipelineGraph, cyclical
from .graph_config import graph_from_dict, load_graph
from .store import TurnStateStore
from .scheduler import CancelToken, TurnResult, replay_executions, resume_turn, run_turn

__all__ = [
    "END",
    "Branch",
    "CancelToken",
    "Chance",
    "Fixed",
    "FunctionCall",
    "Hybrid",
    "LayerSpec",
    "PipelineGraph",
    "RandomnessOracle",
    "RecordSchema",
    "RetryPolicy",
    "StrataSettings",
    "TurnResult",
    "TurnStateStore",
    "calls",
    "cyclical",
    "execute_layer",
    "format_call",
    "graph_from_dict",
    "load_graph",
    "load_settings",
    "parse_call_line",
    "parse_calls",
    "replay_executions",
    "resume_turn",
    "run_turn",
    "segment_calls",
    "segment_text",
    "segmenter",
]
