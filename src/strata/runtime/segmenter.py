from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from strata.core.types import Record
from strata.runtime.calls import FunctionCall, parse_calls


@dataclass(frozen=True, slots=True)
class RecordSchema:
    terminal: str | None = None
    group_fields: frozenset[str] = field(default_factory=frozenset)
    list_fields: frozenset[str] = field(default_factory=frozenset)
    aliases: dict[str, str] = field(default_factory=dict)

    def field_for(self, call_name: str) -> str:
        return self.aliases.get(call_name, call_name)

    @classmethod
    def from_dict(cls, payload: Any) -> "RecordSchema":
        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise ValueError("record schema must be an object")
        terminal = payload.get("terminal")
        if terminal is not None and not isinstance(terminal, str):
            raise ValueError("record schema 'terminal' must be str")
        group_fields = _ensure_names(payload.get("group_fields"), "group_fields")
        list_fields = _ensure_names(payload.get("list_fields"), "list_fields")
        aliases = payload.get("aliases") or {}
        if not isinstance(aliases, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in aliases.items()
        ):
            raise ValueError("record schema 'aliases' must map str -> str")
        return cls(
            terminal=terminal,
            group_fields=frozenset(group_fields),
            list_fields=frozenset(list_fields),
            aliases=dict(aliases),
        )


def _ensure_names(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return value
    raise ValueError(f"record schema '{field_name}' must be list[str]")


def _apply(record: Record, field_name: str, call: FunctionCall, schema: RecordSchema) -> None:
    values = call.values
    if field_name in schema.list_fields:
        record.fields.setdefault(field_name, []).extend(values)
    elif len(values) == 1:
        record.fields[field_name] = values[0]
    else:
        record.fields[field_name] = list(values)


def segment_calls(calls: Iterable[FunctionCall], schema: RecordSchema) -> list[Record]:
    """Fold an ordered call stream into records.

    A group field seen twice flushes the open record (incomplete) before the
    call is applied; the terminal field flushes it complete right after.
    A populated record still open at the end is returned incomplete.
    """
    records: list[Record] = []
    current = Record()
    for call in calls:
        field_name = schema.field_for(call.name)
        if field_name in current.fields and field_name in schema.group_fields:
            records.append(current)
            current = Record()
        _apply(current, field_name, call, schema)
        if schema.terminal is not None and field_name == schema.terminal:
            current.complete = True
            records.append(current)
            current = Record()
    if current.fields:
        records.append(current)
    return records


def segment_text(text: str, schema: RecordSchema, **kwargs: Any) -> list[Record]:
    return segment_calls(parse_calls(text, **kwargs), schema)
