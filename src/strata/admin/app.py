from __future__ import annotations

import os
from dataclasses import asdict
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from strata.backends import get_backend
from strata.core.types import TURN_REJECTED
from strata.runtime import controller
from strata.runtime.graph import PipelineGraph
from strata.runtime.scheduler import TurnResult
from strata.runtime.settings import load_settings
from strata.runtime.store import execution_to_dict, validate_session_id


class RunTurnRequest(BaseModel):
    session_id: str
    payload: Any = None
    backend: str | None = None


def _resolve_data_root(data_root: Path | None) -> Path:
    if data_root is not None:
        return data_root
    return load_settings().data_root


def _turn_result_payload(result: TurnResult) -> dict[str, Any]:
    return {
        "turn_id": result.turn_id,
        "status": result.status,
        "records": [record.to_dict() for record in result.records],
        "text": result.text,
        "incomplete": result.incomplete,
        "layers": [execution.layer_id for execution in result.executions],
        "failure": asdict(result.failure) if result.failure is not None else None,
    }


def create_app(
    data_root: Path | None = None,
    *,
    graph: PipelineGraph | None = None,
    backend=None,
) -> FastAPI:
    root = _resolve_data_root(data_root)
    store = controller.shared_store(root / "sessions")
    pipeline = graph or controller.shared_graph(load_settings())

    app = FastAPI(title="strata admin")
    app.state.data_root = root

    @app.middleware("http")
    async def _auth_middleware(request: Request, call_next):
        token = os.getenv("STRATA_ADMIN_TOKEN")
        if token and request.headers.get("X-Admin-Token") != token:
            return JSONResponse(status_code=401, content={"detail": "Invalid admin token"})
        return await call_next(request)

    @app.get("/api/sessions")
    def list_sessions() -> dict[str, Any]:
        sessions = []
        for session_id in store.list_sessions():
            turns = store.list_turns(session_id)
            latest = turns[-1] if turns else None
            sessions.append(
                {
                    "session_id": session_id,
                    "turns": len(turns),
                    "latest_turn": latest["turn_id"] if latest else None,
                    "latest_status": latest["status"] if latest else None,
                }
            )
        return {"sessions": sessions}

    def _checked_session(session_id: str) -> str:
        try:
            validate_session_id(session_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        return session_id

    @app.get("/api/sessions/{session_id}/turns")
    def list_turns(session_id: str) -> dict[str, Any]:
        session_id = _checked_session(session_id)
        return {"session_id": session_id, "turns": store.list_turns(session_id)}

    @app.get("/api/sessions/{session_id}/memory")
    def session_memory(session_id: str) -> dict[str, Any]:
        return asdict(store.latest_memory(_checked_session(session_id)))

    @app.get("/api/turns/{turn_id}")
    def get_turn(turn_id: str) -> dict[str, Any]:
        try:
            manifest = store.turn_status(turn_id)
            executions = store.replay(turn_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Turn not found") from None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        return {
            "turn": manifest,
            "executions": [execution_to_dict(execution) for execution in executions],
        }

    @app.post("/api/turns")
    def run_turn(request: RunTurnRequest) -> dict[str, Any]:
        turn_backend = backend
        if request.backend:
            try:
                turn_backend = get_backend(request.backend)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from None
        try:
            result = controller.submit_turn(
                request.session_id,
                request.payload,
                turn_backend,
                base_dir=root,
                graph=pipeline,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        if result.status == TURN_REJECTED:
            raise HTTPException(status_code=409, detail=result.failure.message)
        return _turn_result_payload(result)

    return app
