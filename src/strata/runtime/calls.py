from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from strata.core.tracing import TraceWriter, emit_trace

KIND_STRING = "string"
KIND_NUMBER = "number"
KIND_RAW = "raw"

_CALL_HEAD = re.compile(r"([A-Za-z_][A-Za-z0-9_.]*)\(")
_NUMBER = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_INTEGER = re.compile(r"[+-]?\d+")


@dataclass(slots=True)
class Argument:
    kind: str
    value: Any
    source: str


@dataclass(slots=True)
class FunctionCall:
    name: str
    arguments: list[Argument] = field(default_factory=list)

    @property
    def values(self) -> list[Any]:
        return [argument.value for argument in self.arguments]


def make_argument(value: Any) -> Argument:
    if isinstance(value, bool):
        raise TypeError("boolean call arguments are not supported")
    if isinstance(value, (int, float)):
        return Argument(kind=KIND_NUMBER, value=value, source=repr(value))
    text = str(value)
    return Argument(kind=KIND_STRING, value=text, source=f'"{text}"')


def make_call(name: str, *values: Any) -> FunctionCall:
    return FunctionCall(name=name, arguments=[make_argument(value) for value in values])


def _find_close(text: str, open_index: int) -> int:
    depth = 0
    in_string = False
    for index in range(open_index, len(text)):
        char = text[index]
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return index
    return -1


def _split_arguments(body: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    in_string = False
    for char in body:
        if char == '"':
            in_string = not in_string
        elif not in_string:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
            elif char == "," and depth == 0:
                parts.append("".join(current))
                current = []
                continue
        current.append(char)
    parts.append("".join(current))
    return parts


def _coerce_argument(text: str) -> Argument | None:
    stripped = text.strip()
    if not stripped:
        return None
    if len(stripped) >= 2 and stripped[0] == '"' and stripped[-1] == '"':
        return Argument(kind=KIND_STRING, value=stripped[1:-1], source=stripped)
    # nested calls are outside the grammar
    if "(" in stripped or ")" in stripped:
        return None
    if _NUMBER.fullmatch(stripped):
        if _INTEGER.fullmatch(stripped):
            return Argument(kind=KIND_NUMBER, value=int(stripped), source=stripped)
        return Argument(kind=KIND_NUMBER, value=float(stripped), source=stripped)
    return Argument(kind=KIND_RAW, value=stripped, source=stripped)


def parse_call_line(line: str) -> FunctionCall | None:
    """Recognize one ``name(arg, ...)`` call at the start of ``line``.

    Returns ``None`` for anything that is not a call with at least one
    extractable argument. Text after the closing parenthesis is ignored.
    """
    stripped = line.strip()
    match = _CALL_HEAD.match(stripped)
    if match is None:
        return None
    open_index = match.end() - 1
    close_index = _find_close(stripped, open_index)
    if close_index == -1:
        return None
    body = stripped[open_index + 1 : close_index]
    arguments = [
        argument
        for argument in (_coerce_argument(part) for part in _split_arguments(body))
        if argument is not None
    ]
    if not arguments:
        return None
    return FunctionCall(name=match.group(1), arguments=arguments)


def parse_calls(
    text: str,
    *,
    tracer: TraceWriter | None = None,
    layer: str | None = None,
) -> list[FunctionCall]:
    calls: list[FunctionCall] = []
    skipped = 0
    for line in text.splitlines():
        call = parse_call_line(line)
        if call is None:
            if line.strip():
                skipped += 1
            continue
        calls.append(call)
    if skipped:
        data: dict[str, Any] = {"skipped": skipped, "parsed": len(calls)}
        if layer is not None:
            data["layer"] = layer
        emit_trace(tracer, "call_parse_skip", data)
    return calls


def format_call(call: FunctionCall) -> str:
    return f"{call.name}({', '.join(argument.source for argument in call.arguments)})"
