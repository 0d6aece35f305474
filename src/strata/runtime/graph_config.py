"""Load a :class:`PipelineGraph` from a JSON definition.

Example::

    {
      "start": "reason",
      "layers": [
        {"name": "reason", "role": "reasoning", "system_prompt": "...",
         "output": "calls",
         "schema": {"terminal": "status", "group_fields": ["flavors"],
                    "list_fields": ["flavors"]}},
        {"name": "content", "role": "content", "system_prompt": "..."},
        {"name": "correct", "role": "correction", "system_prompt": "..."}
      ],
      "routes": {
        "reason": {"next": "content"},
        "content": {"next": "correct"},
        "correct": {"next": "$end", "when": {"issue": true},
                    "then": {"next": "content"}}
      }
    }

``routes`` may be omitted, in which case layers run once each in order.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from strata.core.errors import ConfigurationError
from strata.runtime.graph import (
    Branch,
    Chance,
    DecisionKey,
    Fixed,
    Hybrid,
    PipelineGraph,
    Route,
    Trigger,
    cyclical,
    field_number,
    field_value,
    first_line,
    has_field,
    issue_reported,
    outcome_is,
)
from strata.runtime.layers import LayerSpec
from strata.runtime.segmenter import RecordSchema


def _require_str(payload: dict[str, Any], key: str, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{where}: '{key}' must be a non-empty string")
    return value


def _layer_from_dict(payload: Any) -> LayerSpec:
    if not isinstance(payload, dict):
        raise ConfigurationError("layer definitions must be objects")
    name = _require_str(payload, "name", "layer")
    where = f"layer '{name}'"
    params = payload.get("params") or {}
    if not isinstance(params, dict):
        raise ConfigurationError(f"{where}: 'params' must be an object")
    try:
        schema = RecordSchema.from_dict(payload["schema"]) if "schema" in payload else None
    except ValueError as exc:
        raise ConfigurationError(f"{where}: {exc}") from exc
    max_attempts = payload.get("max_attempts")
    if max_attempts is not None and not isinstance(max_attempts, int):
        raise ConfigurationError(f"{where}: 'max_attempts' must be int")
    timeout_s = payload.get("timeout_s")
    if timeout_s is not None and not isinstance(timeout_s, (int, float)):
        raise ConfigurationError(f"{where}: 'timeout_s' must be a number")
    return LayerSpec(
        name=name,
        role=_require_str(payload, "role", where),
        system_prompt=str(payload.get("system_prompt", "")),
        output=str(payload.get("output", "text")),
        schema=schema,
        params=dict(params),
        max_attempts=max_attempts,
        timeout_s=float(timeout_s) if timeout_s is not None else None,
        connector=bool(payload.get("connector", False)),
        include_memory=bool(payload.get("include_memory", True)),
    )


def _decision_key(payload: Any, where: str) -> DecisionKey:
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{where}: decision key must be an object")
    if payload.get("first_line"):
        return first_line()
    if isinstance(payload.get("field"), str):
        return field_value(payload["field"])
    raise ConfigurationError(f"{where}: decision key needs 'field' or 'first_line'")


def _threshold_key(payload: Any, where: str) -> DecisionKey:
    if not isinstance(payload, dict) or not isinstance(payload.get("field"), str):
        raise ConfigurationError(f"{where}: chance key needs a 'field'")
    return field_number(payload["field"])


def _trigger(payload: Any, where: str) -> Trigger:
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{where}: 'when' must be an object")
    if payload.get("issue"):
        return issue_reported()
    if isinstance(payload.get("outcome"), str):
        return outcome_is(payload["outcome"])
    if isinstance(payload.get("field"), str):
        equals = payload.get("equals")
        return has_field(payload["field"], None if equals is None else str(equals))
    raise ConfigurationError(f"{where}: 'when' needs 'issue', 'outcome' or 'field'")


def _decision_route(payload: dict[str, Any], where: str) -> Branch | Chance:
    if "branch" in payload:
        branches = payload.get("branches") or {}
        if not isinstance(branches, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in branches.items()
        ):
            raise ConfigurationError(f"{where}: 'branches' must map str -> str")
        default = payload.get("default")
        if default is not None and not isinstance(default, str):
            raise ConfigurationError(f"{where}: 'default' must be a string")
        return Branch(key=_decision_key(payload["branch"], where), branches=branches, default=default)
    if "chance" in payload:
        return Chance(
            threshold_key=_threshold_key(payload["chance"], where),
            passed=_require_str(payload, "passed", where),
            failed=_require_str(payload, "failed", where),
        )
    raise ConfigurationError(f"{where}: route needs 'next', 'branch' or 'chance'")


def _route_from_dict(name: str, payload: Any) -> Route:
    where = f"route '{name}'"
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{where}: must be an object")
    if "next" in payload:
        target = _require_str(payload, "next", where)
        if "when" not in payload:
            return Fixed(target)
        then = payload.get("then")
        if not isinstance(then, dict):
            raise ConfigurationError(f"{where}: 'then' must be an object")
        override: Route
        if "next" in then:
            override = Fixed(_require_str(then, "next", where))
        else:
            override = _decision_route(then, where)
        return Hybrid(next=target, trigger=_trigger(payload["when"], where), override=override)
    return _decision_route(payload, where)


def graph_from_dict(payload: Any) -> PipelineGraph:
    if not isinstance(payload, dict):
        raise ConfigurationError("pipeline graph definition must be an object")
    raw_layers = payload.get("layers")
    if not isinstance(raw_layers, list) or not raw_layers:
        raise ConfigurationError("pipeline graph needs a non-empty 'layers' list")
    layers = [_layer_from_dict(item) for item in raw_layers]
    max_steps = payload.get("max_steps", 32)
    if not isinstance(max_steps, int):
        raise ConfigurationError("'max_steps' must be int")
    raw_routes = payload.get("routes")
    if raw_routes is None:
        return cyclical(layers, max_steps=max_steps)
    if not isinstance(raw_routes, dict):
        raise ConfigurationError("'routes' must be an object")
    routes = {name: _route_from_dict(name, item) for name, item in raw_routes.items()}
    start = payload.get("start", layers[0].name)
    if not isinstance(start, str):
        raise ConfigurationError("'start' must be a string")
    return PipelineGraph(layers=tuple(layers), start=start, routes=routes, max_steps=max_steps)


def load_graph(path: Path) -> PipelineGraph:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{path}: invalid JSON ({exc})") from exc
    return graph_from_dict(payload)
