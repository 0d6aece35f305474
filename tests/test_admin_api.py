from __future__ import annotations

import json
from pathlib import Path

import pytest

pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from strata.admin.app import create_app
from strata.core.errors import ConfigurationError
from strata.runtime import controller

pytestmark = pytest.mark.admin

ROLE_RESPONSES = {
    "reason": ['flavors("a")\nprice(1)\nstatus("x")'],
    "content": ["One scoop of a."],
    "correct": ['verdict("ok")\nfact("customer", "flavor", "a")'],
    "memorize": ['remember("customer", "visits", 1)'],
}


def _client(data_root: Path, monkeypatch) -> TestClient:
    monkeypatch.delenv("STRATA_ADMIN_TOKEN", raising=False)
    monkeypatch.setenv("STRATA_FAKE_ROLE_RESPONSES", json.dumps(ROLE_RESPONSES))
    return TestClient(create_app(data_root=data_root))


def test_admin_run_turn_and_inspect(tmp_path: Path, monkeypatch) -> None:
    client = _client(tmp_path, monkeypatch)

    response = client.post(
        "/api/turns", json={"session_id": "session-2", "payload": "hi", "backend": "fake"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["layers"] == ["reason", "content", "correct", "memorize"]
    assert body["text"] == "One scoop of a."
    assert (tmp_path / "traces" / "session-2.jsonl").exists()

    sessions = client.get("/api/sessions").json()["sessions"]
    assert sessions == [
        {
            "session_id": "session-2",
            "turns": 1,
            "latest_turn": body["turn_id"],
            "latest_status": "completed",
        }
    ]

    turn = client.get(f"/api/turns/{body['turn_id']}").json()
    assert turn["turn"]["status"] == "completed"
    assert [item["sequence_index"] for item in turn["executions"]] == [0, 1, 2, 3]

    turns = client.get("/api/sessions/session-2/turns").json()["turns"]
    assert [item["turn_id"] for item in turns] == [body["turn_id"]]

    memory = client.get("/api/sessions/session-2/memory").json()
    assert memory["revision"] == 1
    assert memory["entities"] == {"customer": {"flavor": "a", "visits": 1}}


def test_admin_rejects_overlapping_turn(tmp_path: Path, monkeypatch) -> None:
    client = _client(tmp_path, monkeypatch)
    controller.shared_store(tmp_path / "sessions").begin_turn("busy")

    response = client.post("/api/turns", json={"session_id": "busy", "backend": "fake"})

    assert response.status_code == 409


def test_admin_turn_lookup_errors(tmp_path: Path, monkeypatch) -> None:
    client = _client(tmp_path, monkeypatch)

    assert client.get("/api/turns/nobody__turn-0001").status_code == 404
    assert client.get("/api/turns/not-a-turn-id").status_code == 400
    unknown_backend = client.post("/api/turns", json={"session_id": "s", "backend": "nope"})
    assert unknown_backend.status_code == 400


@pytest.mark.parametrize("session_id", ["..x", ".hidden"])
def test_admin_rejects_invalid_session_ids(tmp_path: Path, monkeypatch, session_id: str) -> None:
    client = _client(tmp_path, monkeypatch)

    assert client.get(f"/api/sessions/{session_id}/turns").status_code == 400
    assert client.get(f"/api/sessions/{session_id}/memory").status_code == 400
    assert client.get(f"/api/turns/{session_id}__turn-0001").status_code == 400


def test_admin_graph_is_loaded_once_at_startup(tmp_path: Path, monkeypatch) -> None:
    graph_path = tmp_path / "graph.json"
    graph_path.write_text(
        json.dumps({"layers": [{"name": "content", "role": "content", "system_prompt": "Hi."}]}),
        encoding="utf-8",
    )
    monkeypatch.setenv("STRATA_GRAPH", str(graph_path))
    client = _client(tmp_path, monkeypatch)
    graph_path.write_text("{not json", encoding="utf-8")

    response = client.post("/api/turns", json={"session_id": "s", "payload": "hi", "backend": "fake"})

    assert response.status_code == 200
    assert response.json()["layers"] == ["content"]


def test_admin_invalid_graph_fails_at_startup(tmp_path: Path, monkeypatch) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps({"layers": []}), encoding="utf-8")
    monkeypatch.setenv("STRATA_GRAPH", str(broken))

    with pytest.raises(ConfigurationError):
        create_app(data_root=tmp_path)


def test_admin_token_required_when_configured(tmp_path: Path, monkeypatch) -> None:
    client = _client(tmp_path, monkeypatch)
    monkeypatch.setenv("STRATA_ADMIN_TOKEN", "secret")

    assert client.get("/api/sessions").status_code == 401
    response = client.get("/api/sessions", headers={"X-Admin-Token": "secret"})
    assert response.status_code == 200
    assert response.json() == {"sessions": []}
