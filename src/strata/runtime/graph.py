from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Union

from strata.core.errors import ConfigurationError, RoutingUnresolved
from strata.core.types import ROLE_MEMORY, ROLE_NAVIGATOR, LayerExecution, Record
from strata.runtime.layers import LayerSpec, has_issue
from strata.runtime.oracle import SCALE, OracleDraw, RandomnessOracle
from strata.runtime.segmenter import RecordSchema, segment_text

END = "$end"

DecisionKey = Callable[[LayerExecution], Any]
Trigger = Callable[[LayerExecution], bool]


@dataclass(frozen=True, slots=True)
class Fixed:
    target: str


@dataclass(frozen=True, slots=True)
class Branch:
    key: DecisionKey
    branches: Mapping[str, str]
    default: str | None = None


@dataclass(frozen=True, slots=True)
class Chance:
    threshold_key: DecisionKey
    passed: str
    failed: str


@dataclass(frozen=True, slots=True)
class Hybrid:
    next: str
    trigger: Trigger
    override: Union[Fixed, Branch, Chance]


Route = Union[Fixed, Branch, Chance, Hybrid]


@dataclass(frozen=True, slots=True)
class Resolution:
    target: str
    kind: str
    decision: str | None = None
    draw: OracleDraw | None = None


def _records_of(execution: LayerExecution) -> list[Record]:
    if execution.parsed_output is not None:
        return execution.records
    return segment_text(execution.raw_output, RecordSchema())


def field_value(name: str) -> DecisionKey:
    def key(execution: LayerExecution) -> str | None:
        for record in _records_of(execution):
            if name not in record.fields:
                continue
            value = record.fields[name]
            if isinstance(value, list):
                value = value[0] if value else None
            return None if value is None else str(value).strip()
        return None

    return key


def field_number(name: str) -> DecisionKey:
    def key(execution: LayerExecution) -> float | None:
        for record in _records_of(execution):
            value = record.fields.get(name)
            if isinstance(value, list):
                value = value[0] if value else None
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
            if isinstance(value, str):
                try:
                    return float(value)
                except ValueError:
                    return None
        return None

    return key


def first_line() -> DecisionKey:
    def key(execution: LayerExecution) -> str | None:
        for line in execution.raw_output.splitlines():
            if line.strip():
                return line.strip().lower()
        return None

    return key


def has_field(name: str, equals: str | None = None) -> Trigger:
    lookup = field_value(name)

    def trigger(execution: LayerExecution) -> bool:
        value = lookup(execution)
        if value is None:
            return False
        return equals is None or value == equals

    return trigger


def outcome_is(outcome: str) -> Trigger:
    def trigger(execution: LayerExecution) -> bool:
        return execution.outcome == outcome

    return trigger


def issue_reported() -> Trigger:
    return has_issue


def route_targets(route: Route) -> list[str]:
    if isinstance(route, Fixed):
        return [route.target]
    if isinstance(route, Branch):
        targets = list(route.branches.values())
        if route.default is not None:
            targets.append(route.default)
        return targets
    if isinstance(route, Chance):
        return [route.passed, route.failed]
    if isinstance(route, Hybrid):
        return [route.next, *route_targets(route.override)]
    raise ConfigurationError(f"unsupported route type {type(route).__name__}")


def _coerce_threshold(raw: Any) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, float) and not math.isfinite(raw):
        return None
    try:
        threshold = int(raw)
    except (TypeError, ValueError, OverflowError):
        return None
    return min(SCALE, max(0, threshold))


def _resolve_override(
    route: Union[Fixed, Branch, Chance], execution: LayerExecution, oracle: RandomnessOracle
) -> Resolution:
    if isinstance(route, Fixed):
        return Resolution(target=route.target, kind="fixed")
    if isinstance(route, Branch):
        decision = route.key(execution)
        if decision is not None and decision in route.branches:
            return Resolution(target=route.branches[decision], kind="branch", decision=decision)
        # validation guarantees a default for every branch route
        return Resolution(target=route.default, kind="branch_default", decision=decision)
    threshold = _coerce_threshold(route.threshold_key(execution))
    if threshold is None:
        return Resolution(target=route.failed, kind="chance_missing")
    draw = oracle.draw(threshold)
    target = route.passed if draw.passed else route.failed
    return Resolution(target=target, kind="chance", decision=str(threshold), draw=draw)


def resolve_route(
    route: Route, execution: LayerExecution, oracle: RandomnessOracle
) -> Resolution:
    if isinstance(route, Fixed):
        return Resolution(target=route.target, kind="fixed")
    if isinstance(route, Hybrid):
        if not route.trigger(execution):
            return Resolution(target=route.next, kind="fixed")
        resolution = _resolve_override(route.override, execution, oracle)
        return Resolution(
            target=resolution.target,
            kind=f"override_{resolution.kind}",
            decision=resolution.decision,
            draw=resolution.draw,
        )
    return _resolve_override(route, execution, oracle)


@dataclass(frozen=True)
class PipelineGraph:
    """Named layers, a start layer and one route per layer.

    Validation happens here, once: after construction every route resolves
    to a declared layer or to :data:`END`.
    """

    layers: tuple[LayerSpec, ...]
    start: str
    routes: Mapping[str, Route]
    max_steps: int = 32
    _by_name: Mapping[str, LayerSpec] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        layers = tuple(self.layers)
        by_name: dict[str, LayerSpec] = {}
        for layer in layers:
            if layer.name in by_name:
                raise ConfigurationError(f"duplicate layer name '{layer.name}'")
            by_name[layer.name] = layer
        object.__setattr__(self, "layers", layers)
        object.__setattr__(self, "routes", MappingProxyType(dict(self.routes)))
        object.__setattr__(self, "_by_name", MappingProxyType(by_name))
        self._validate()

    def _validate(self) -> None:
        if not self.layers:
            raise ConfigurationError("pipeline graph has no layers")
        if self.max_steps < 1:
            raise ConfigurationError("max_steps must be >= 1")
        if self.start not in self._by_name:
            raise RoutingUnresolved(f"start layer '{self.start}' is not declared")
        for name in self.routes:
            if name not in self._by_name:
                raise RoutingUnresolved(f"route declared for unknown layer '{name}'")
        memory_layers = [layer.name for layer in self.layers if layer.role == ROLE_MEMORY]
        if len(memory_layers) > 1:
            raise ConfigurationError(
                f"only one memory layer may be declared, found {', '.join(memory_layers)}"
            )
        for layer in self.layers:
            route = self.routes.get(layer.name)
            if route is None:
                raise RoutingUnresolved(f"layer '{layer.name}' has no route")
            if isinstance(route, Branch) and route.default is None:
                raise RoutingUnresolved(f"branch route of '{layer.name}' needs a default")
            if isinstance(route, Hybrid):
                if not isinstance(route.override, (Fixed, Branch, Chance)):
                    raise ConfigurationError(
                        f"hybrid route of '{layer.name}' must override with a target, branch or chance"
                    )
                if isinstance(route.override, Branch) and route.override.default is None:
                    raise RoutingUnresolved(f"branch route of '{layer.name}' needs a default")
            for target in route_targets(route):
                if target != END and target not in self._by_name:
                    raise RoutingUnresolved(
                        f"layer '{layer.name}' routes to unknown layer '{target}'"
                    )
            if layer.role == ROLE_MEMORY and route != Fixed(END):
                raise ConfigurationError(f"memory layer '{layer.name}' must route to {END}")
            if layer.role == ROLE_NAVIGATOR and isinstance(route, Fixed):
                raise ConfigurationError(f"navigator layer '{layer.name}' needs a decision route")

    def layer(self, name: str) -> LayerSpec:
        return self._by_name[name]

    def route(self, name: str) -> Route:
        return self.routes[name]

    @property
    def memory_layer(self) -> LayerSpec | None:
        for layer in self.layers:
            if layer.role == ROLE_MEMORY:
                return layer
        return None

    @property
    def mode(self) -> str:
        routes = list(self.routes.values())
        if all(isinstance(route, Fixed) for route in routes):
            return "cyclical"
        if any(isinstance(route, Hybrid) for route in routes):
            return "hybrid"
        return "circumstantial"


def cyclical(layers: Iterable[LayerSpec], *, max_steps: int = 32) -> PipelineGraph:
    layer_list = list(layers)
    if not layer_list:
        raise ConfigurationError("pipeline graph has no layers")
    routes: dict[str, Route] = {}
    for current, following in zip(layer_list, layer_list[1:]):
        routes[current.name] = Fixed(following.name)
    routes[layer_list[-1].name] = Fixed(END)
    return PipelineGraph(
        layers=tuple(layer_list), start=layer_list[0].name, routes=routes, max_steps=max_steps
    )
