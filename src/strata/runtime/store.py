from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable

from strata.core.errors import ConcurrencyViolation, FailureDescriptor
from strata.core.types import (
    OUTCOMES,
    TURN_CANCELLED,
    TURN_COMPLETED,
    TURN_FAILED,
    TURN_RUNNING,
    TURN_STATUSES,
    LayerExecution,
    Record,
    TurnMemory,
)

logger = logging.getLogger(__name__)

DEFAULT_DIR = Path("data") / "sessions"
TURN_SEPARATOR = "__turn-"
_SESSION_ID = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]*")


def turn_id_for(session_id: str, index: int) -> str:
    return f"{session_id}{TURN_SEPARATOR}{index:04d}"


def split_turn_id(turn_id: str) -> tuple[str, int]:
    session_id, separator, raw_index = turn_id.rpartition(TURN_SEPARATOR)
    if not separator or not session_id or not raw_index.isdigit():
        raise ValueError(f"malformed turn id '{turn_id}'")
    validate_session_id(session_id)
    return session_id, int(raw_index)


def validate_session_id(session_id: str) -> None:
    if not _SESSION_ID.fullmatch(session_id) or TURN_SEPARATOR in session_id:
        raise ValueError(f"invalid session id '{session_id}'")


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False))
        handle.flush()
        os.fsync(handle.fileno())
    temp_path.replace(path)


def execution_to_dict(execution: LayerExecution) -> dict[str, Any]:
    return {
        "layer_id": execution.layer_id,
        "role": execution.role,
        "turn_id": execution.turn_id,
        "sequence_index": execution.sequence_index,
        "input_snapshot": execution.input_snapshot,
        "raw_output": execution.raw_output,
        "parsed_output": (
            None
            if execution.parsed_output is None
            else [record.to_dict() for record in execution.parsed_output]
        ),
        "started_at": execution.started_at,
        "completed_at": execution.completed_at,
        "outcome": execution.outcome,
        "attempts": execution.attempts,
        "error": execution.error,
    }


def _ensure_str(value: Any, field_name: str) -> str:
    if isinstance(value, str):
        return value
    raise ValueError(f"layer execution field '{field_name}' must be str")


def _ensure_number(value: Any, field_name: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    raise ValueError(f"layer execution field '{field_name}' must be a number")


def _coerce_records(payload: Any) -> list[Record] | None:
    if payload is None:
        return None
    if not isinstance(payload, list):
        raise ValueError("layer execution parsed_output must be a list")
    records: list[Record] = []
    for item in payload:
        if not isinstance(item, dict) or not isinstance(item.get("fields"), dict):
            raise ValueError("layer execution records must include a fields object")
        records.append(Record(fields=item["fields"], complete=bool(item.get("complete"))))
    return records


def execution_from_dict(payload: Any) -> LayerExecution:
    if not isinstance(payload, dict):
        raise ValueError("layer execution payload must be an object")
    sequence_index = payload.get("sequence_index")
    if not isinstance(sequence_index, int) or isinstance(sequence_index, bool):
        raise ValueError("layer execution sequence_index must be int")
    snapshot = payload.get("input_snapshot")
    if not isinstance(snapshot, dict):
        raise ValueError("layer execution input_snapshot must be an object")
    outcome = _ensure_str(payload.get("outcome"), "outcome")
    if outcome not in OUTCOMES:
        raise ValueError(f"layer execution outcome '{outcome}' is unknown")
    error = payload.get("error")
    if error is not None and not isinstance(error, str):
        raise ValueError("layer execution error must be str")
    attempts = payload.get("attempts", 1)
    if not isinstance(attempts, int):
        raise ValueError("layer execution attempts must be int")
    return LayerExecution(
        layer_id=_ensure_str(payload.get("layer_id"), "layer_id"),
        role=_ensure_str(payload.get("role"), "role"),
        turn_id=_ensure_str(payload.get("turn_id"), "turn_id"),
        sequence_index=sequence_index,
        input_snapshot=snapshot,
        raw_output=_ensure_str(payload.get("raw_output"), "raw_output"),
        parsed_output=_coerce_records(payload.get("parsed_output")),
        started_at=_ensure_number(payload.get("started_at"), "started_at"),
        completed_at=_ensure_number(payload.get("completed_at"), "completed_at"),
        outcome=outcome,
        attempts=attempts,
        error=error,
    )


def _memory_from_dict(payload: Any) -> TurnMemory:
    if not isinstance(payload, dict):
        raise ValueError("turn memory payload must be an object")
    entities = payload.get("entities")
    if not isinstance(entities, dict) or not all(
        isinstance(value, dict) for value in entities.values()
    ):
        raise ValueError("turn memory entities must map str -> object")
    revision = payload.get("revision")
    if not isinstance(revision, int):
        raise ValueError("turn memory revision must be int")
    return TurnMemory(
        entities=entities,
        revision=revision,
        turn_index=payload.get("turn_index"),
        updated_ts=float(payload.get("updated_ts") or 0.0),
    )


class TurnStateStore:
    """Append-only per-turn execution logs plus committed memory revisions.

    Layout under ``base_dir``::

        <session>/turns/<index>.jsonl   layer executions, in sequence order
        <session>/turns/<index>.json    turn manifest (status, timestamps)
        <session>/memory/<index>.json   memory committed by turn <index>
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self.base_dir = base_dir or DEFAULT_DIR
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _session_lock(self, session_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[session_id] = lock
            return lock

    def _session_dir(self, session_id: str) -> Path:
        return self.base_dir / session_id

    def _log_path(self, session_id: str, index: int) -> Path:
        return self._session_dir(session_id) / "turns" / f"{index:04d}.jsonl"

    def _manifest_path(self, session_id: str, index: int) -> Path:
        return self._session_dir(session_id) / "turns" / f"{index:04d}.json"

    def _memory_path(self, session_id: str, index: int) -> Path:
        return self._session_dir(session_id) / "memory" / f"{index:04d}.json"

    def _turn_indexes(self, session_id: str) -> list[int]:
        turns_dir = self._session_dir(session_id) / "turns"
        if not turns_dir.is_dir():
            return []
        return sorted(int(path.stem) for path in turns_dir.glob("*.json") if path.stem.isdigit())

    def _read_manifest(self, session_id: str, index: int) -> dict[str, Any]:
        path = self._manifest_path(session_id, index)
        if not path.exists():
            raise KeyError(turn_id_for(session_id, index))
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict) or payload.get("status") not in TURN_STATUSES:
            raise ValueError(f"turn manifest {path.name} is malformed")
        return payload

    def begin_turn(
        self,
        session_id: str,
        payload: Any = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> str:
        validate_session_id(session_id)
        with self._session_lock(session_id):
            indexes = self._turn_indexes(session_id)
            if indexes:
                latest = self._read_manifest(session_id, indexes[-1])
                if latest["status"] == TURN_RUNNING:
                    logger.info("rejecting turn for %s: %s still running", session_id, latest["turn_id"])
                    raise ConcurrencyViolation(
                        f"session '{session_id}' already has running turn '{latest['turn_id']}'"
                    )
            index = indexes[-1] + 1 if indexes else 1
            turn_id = turn_id_for(session_id, index)
            _write_json_atomic(
                self._manifest_path(session_id, index),
                {
                    "turn_id": turn_id,
                    "session_id": session_id,
                    "index": index,
                    "status": TURN_RUNNING,
                    "started_at": clock(),
                    "finished_at": None,
                    "attempts": 1,
                    "failure": None,
                    "payload": payload,
                },
            )
            return turn_id

    def append(self, execution: LayerExecution) -> None:
        session_id, index = split_turn_id(execution.turn_id)
        with self._session_lock(session_id):
            manifest = self._read_manifest(session_id, index)
            if manifest["status"] != TURN_RUNNING:
                raise ValueError(f"turn '{execution.turn_id}' is not running")
            expected = len(self._read_log(session_id, index))
            if execution.sequence_index != expected:
                raise ValueError(
                    f"turn '{execution.turn_id}' expects sequence_index {expected}, "
                    f"got {execution.sequence_index}"
                )
            path = self._log_path(session_id, index)
            path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(execution_to_dict(execution), ensure_ascii=False)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())

    def _read_log(self, session_id: str, index: int) -> list[LayerExecution]:
        path = self._log_path(session_id, index)
        if not path.exists():
            return []
        executions: list[LayerExecution] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            executions.append(execution_from_dict(json.loads(line)))
        return executions

    def replay(self, turn_id: str) -> list[LayerExecution]:
        session_id, index = split_turn_id(turn_id)
        with self._session_lock(session_id):
            self._read_manifest(session_id, index)
            return self._read_log(session_id, index)

    def read_memory(self, turn_id: str) -> TurnMemory:
        """Memory of the latest completed turn before ``turn_id``.

        A memory file only counts once its turn finished ``completed``;
        files left by failed, cancelled or still running turns are skipped.
        """
        session_id, index = split_turn_id(turn_id)
        memory_dir = self._session_dir(session_id) / "memory"
        if not memory_dir.is_dir():
            return TurnMemory()
        written = sorted(
            int(path.stem)
            for path in memory_dir.glob("*.json")
            if path.stem.isdigit() and int(path.stem) < index
        )
        with self._session_lock(session_id):
            for candidate in reversed(written):
                try:
                    manifest = self._read_manifest(session_id, candidate)
                except KeyError:
                    continue
                if manifest["status"] != TURN_COMPLETED:
                    continue
                path = self._memory_path(session_id, candidate)
                return _memory_from_dict(json.loads(path.read_text(encoding="utf-8")))
        return TurnMemory()

    def latest_memory(self, session_id: str) -> TurnMemory:
        validate_session_id(session_id)
        return self.read_memory(turn_id_for(session_id, 10**9))

    def commit_memory(self, turn_id: str, memory: TurnMemory) -> Path:
        """Write the running turn's memory; a resumed turn replaces its own file."""
        session_id, index = split_turn_id(turn_id)
        with self._session_lock(session_id):
            manifest = self._read_manifest(session_id, index)
            if manifest["status"] != TURN_RUNNING:
                raise ValueError(f"turn '{turn_id}' is not running")
            path = self._memory_path(session_id, index)
            _write_json_atomic(path, asdict(memory))
            return path

    def finish_turn(
        self,
        turn_id: str,
        status: str,
        failure: FailureDescriptor | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if status not in (TURN_COMPLETED, TURN_FAILED, TURN_CANCELLED):
            raise ValueError(f"cannot finish turn with status '{status}'")
        session_id, index = split_turn_id(turn_id)
        with self._session_lock(session_id):
            manifest = self._read_manifest(session_id, index)
            if manifest["status"] != TURN_RUNNING:
                raise ValueError(f"turn '{turn_id}' is not running")
            manifest["status"] = status
            manifest["finished_at"] = clock()
            manifest["failure"] = asdict(failure) if failure is not None else None
            _write_json_atomic(self._manifest_path(session_id, index), manifest)

    def reopen_turn(self, turn_id: str) -> None:
        session_id, index = split_turn_id(turn_id)
        with self._session_lock(session_id):
            manifest = self._read_manifest(session_id, index)
            if manifest["status"] not in (TURN_FAILED, TURN_CANCELLED):
                raise ValueError(f"turn '{turn_id}' is {manifest['status']}, not resumable")
            if self._turn_indexes(session_id)[-1] != index:
                raise ConcurrencyViolation(f"turn '{turn_id}' is not the latest turn of its session")
            manifest["status"] = TURN_RUNNING
            manifest["finished_at"] = None
            manifest["failure"] = None
            manifest["attempts"] = int(manifest.get("attempts") or 1) + 1
            _write_json_atomic(self._manifest_path(session_id, index), manifest)

    def abort_turn(self, turn_id: str) -> None:
        self.finish_turn(
            turn_id,
            TURN_FAILED,
            FailureDescriptor(kind="aborted", message="turn aborted by operator"),
        )

    def turn_status(self, turn_id: str) -> dict[str, Any]:
        session_id, index = split_turn_id(turn_id)
        return self._read_manifest(session_id, index)

    def list_sessions(self) -> list[str]:
        if not self.base_dir.is_dir():
            return []
        return sorted(path.name for path in self.base_dir.iterdir() if path.is_dir())

    def list_turns(self, session_id: str) -> list[dict[str, Any]]:
        validate_session_id(session_id)
        return [self._read_manifest(session_id, index) for index in self._turn_indexes(session_id)]
