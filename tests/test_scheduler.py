from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import pytest

from strata.backends.fake import FakeBackend
from strata.core.errors import (
    KIND_STEP_LIMIT,
    KIND_TURN_FAILED,
    ConcurrencyViolation,
    RoutingUnresolved,
)
from strata.core.tracing import TraceWriter
from strata.core.types import (
    OUTCOME_FAILED,
    OUTCOME_SUCCESS,
    ROLE_CONTENT,
    ROLE_CORRECTION,
    ROLE_MEMORY,
    ROLE_NAVIGATOR,
    ROLE_REASONING,
    TURN_CANCELLED,
    TURN_COMPLETED,
    TURN_FAILED,
)
from strata.runtime.graph import (
    END,
    Branch,
    Chance,
    Fixed,
    Hybrid,
    PipelineGraph,
    cyclical,
    field_number,
    first_line,
    issue_reported,
)
from strata.runtime.layers import OUTPUT_CALLS, LayerSpec
from strata.runtime.oracle import RandomnessOracle
from strata.runtime.scheduler import CancelToken, replay_executions, resume_turn, run_turn
from strata.runtime.segmenter import RecordSchema
from strata.runtime.settings import RetryPolicy
from strata.runtime.store import TurnStateStore, turn_id_for

ORDER = RecordSchema(
    terminal="status",
    group_fields=frozenset({"flavors"}),
    list_fields=frozenset({"flavors"}),
)
POLICY = RetryPolicy(max_attempts=2, timeout_s=None, backoff_s=0.0)
ORDER_TEXT = 'flavors("a", "b")\nprice(1)\nstatus("x")'


def _clock() -> float:
    return 100.0


def _reason() -> LayerSpec:
    return LayerSpec(
        name="reason",
        role=ROLE_REASONING,
        system_prompt="Decide.",
        output=OUTPUT_CALLS,
        schema=ORDER,
    )


def _content() -> LayerSpec:
    return LayerSpec(name="content", role=ROLE_CONTENT, system_prompt="Describe.")


def _correct(connector: bool = False) -> LayerSpec:
    return LayerSpec(
        name="correct", role=ROLE_CORRECTION, system_prompt="Check.", connector=connector
    )


def _three_layer_graph() -> PipelineGraph:
    return cyclical([_reason(), _content(), _correct()])


def _run(graph, store, backend, session_id="s1", **kwargs):
    kwargs.setdefault("oracle", RandomnessOracle(seed=1))
    kwargs.setdefault("policy", POLICY)
    kwargs.setdefault("clock", _clock)
    kwargs.setdefault("sleep", lambda _delay: None)
    return run_turn(graph, store, backend, session_id, "suggest an order", **kwargs)


def test_cyclical_turn_without_memory_layer(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    backend = FakeBackend(
        role_responses={
            "reason": [ORDER_TEXT],
            "content": ["Flavors a and b for 1."],
            "correct": ['verdict("ok")'],
        }
    )

    result = _run(_three_layer_graph(), store, backend)

    assert result.status == TURN_COMPLETED
    assert result.ok
    assert [execution.layer_id for execution in result.executions] == ["reason", "content", "correct"]
    assert len(store.replay(result.turn_id)) == 3
    assert result.records[0].fields == {"flavors": ["a", "b"], "price": 1, "status": "x"}
    assert result.text == "Flavors a and b for 1."
    assert result.incomplete is False
    assert store.latest_memory("s1").revision == 0
    assert not (tmp_path / "s1" / "memory").exists()
    assert store.turn_status(result.turn_id)["status"] == TURN_COMPLETED


def test_later_layers_see_upstream_outputs(tmp_path: Path) -> None:
    backend = FakeBackend(
        role_responses={"reason": [ORDER_TEXT], "content": ["text"], "correct": ['verdict("ok")']}
    )

    _run(_three_layer_graph(), TurnStateStore(tmp_path), backend)

    content_prompt = backend.prompts_for("content")[0]
    correct_prompt = backend.prompts_for("correct")[0]
    assert 'reason: flavors("a", "b")' in content_prompt
    assert "content: text" in correct_prompt
    assert content_prompt.endswith("INPUT:\nsuggest an order")


def test_incomplete_records_are_flagged(tmp_path: Path) -> None:
    backend = FakeBackend(
        role_responses={
            "reason": ['flavors("a")\nprice(1)'],
            "content": ["text"],
            "correct": ['verdict("ok")'],
        }
    )

    result = _run(_three_layer_graph(), TurnStateStore(tmp_path), backend)

    assert result.status == TURN_COMPLETED
    assert result.incomplete is True
    assert result.records[0].fields == {"flavors": ["a"], "price": 1}


def test_memory_layer_commits_once_and_feeds_next_turn(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    memorize = LayerSpec(name="memorize", role=ROLE_MEMORY, system_prompt="Remember.")
    graph = cyclical([_reason(), _content(), _correct(connector=True), memorize])
    backend = FakeBackend(
        role_responses={
            "reason": [ORDER_TEXT, ORDER_TEXT],
            "content": ["text", "text"],
            "correct": ['verdict("ok")\nfact("alice", "flavor", "vanilla")', 'verdict("ok")'],
            "memorize": ['remember("alice", "size", "large")', 'forget("alice", "size")'],
        }
    )

    first = _run(graph, store, backend)
    memory = store.latest_memory("s1")
    second = _run(graph, store, backend)

    assert first.ok and second.ok
    assert memory.revision == 1
    assert memory.entities == {"alice": {"flavor": "vanilla", "size": "large"}}
    assert 'MEMORY:\n{"alice": {"flavor": "vanilla", "size": "large"}}' in backend.prompts_for(
        "reason"
    )[1]
    assert backend.prompts_for("reason")[0].startswith("Decide.\n\nMEMORY:\n{}")
    final = store.latest_memory("s1")
    assert final.revision == 2
    assert final.entities == {"alice": {"flavor": "vanilla"}}


def test_hybrid_correction_loops_back_to_content(tmp_path: Path) -> None:
    graph = PipelineGraph(
        layers=(_reason(), _content(), _correct()),
        start="reason",
        routes={
            "reason": Fixed("content"),
            "content": Fixed("correct"),
            "correct": Hybrid(
                next=END,
                trigger=issue_reported(),
                override=Fixed("content"),
            ),
        },
    )
    backend = FakeBackend(
        role_responses={
            "reason": [ORDER_TEXT],
            "content": ["draft 1", "draft 2"],
            "correct": ['violation("price", "sentence 1")', 'verdict("ok")'],
        }
    )

    result = _run(graph, TurnStateStore(tmp_path), backend)

    assert [execution.layer_id for execution in result.executions] == [
        "reason",
        "content",
        "correct",
        "content",
        "correct",
    ]
    assert result.text == "draft 2"
    assert 'correct: violation("price", "sentence 1")' in backend.prompts_for("content")[1]


@pytest.mark.parametrize(
    "decision, expected",
    [("skip", ["reason", "route"]), ("content", ["reason", "route", "content"])],
)
def test_navigator_branches(tmp_path: Path, decision: str, expected: list[str]) -> None:
    navigator = LayerSpec(name="route", role=ROLE_NAVIGATOR, system_prompt="Pick.")
    graph = PipelineGraph(
        layers=(_reason(), navigator, _content()),
        start="reason",
        routes={
            "reason": Fixed("route"),
            "route": Branch(
                key=first_line(), branches={"skip": END, "content": "content"}, default="content"
            ),
            "content": Fixed(END),
        },
    )
    backend = FakeBackend(
        role_responses={"reason": [ORDER_TEXT], "route": [decision], "content": ["text"]}
    )

    result = _run(graph, TurnStateStore(tmp_path), backend)

    assert [execution.layer_id for execution in result.executions] == expected
    for prompt in backend.prompts_for("content"):
        assert "route:" not in prompt


@pytest.mark.parametrize(
    "threshold, expected",
    [(1000, ["reason", "content"]), (0, ["reason"])],
)
def test_chance_route_uses_oracle(tmp_path: Path, threshold: int, expected: list[str]) -> None:
    reason = LayerSpec(name="reason", role=ROLE_REASONING, system_prompt="", output=OUTPUT_CALLS)
    graph = PipelineGraph(
        layers=(reason, _content()),
        start="reason",
        routes={
            "reason": Chance(threshold_key=field_number("chance"), passed="content", failed=END),
            "content": Fixed(END),
        },
    )
    backend = FakeBackend(role_responses={"reason": [f"chance({threshold})"], "content": ["text"]})
    tracer = TraceWriter("s1", base_dir=tmp_path / "traces")
    oracle = RandomnessOracle(seed=5)

    result = _run(graph, TurnStateStore(tmp_path / "sessions"), backend, oracle=oracle, tracer=tracer)

    assert [execution.layer_id for execution in result.executions] == expected
    assert oracle.draws == 1
    events = [json.loads(line) for line in tracer.path.read_text(encoding="utf-8").splitlines()]
    oracle_events = [event for event in events if event["kind"] == "oracle"]
    assert oracle_events[0]["data"]["threshold"] == threshold
    if threshold == 1000:
        assert result.executions[1].input_snapshot["oracle"]["passed"] is True
        assert "ORACLE:\nthreshold=1000/1000 outcome=PASSED" in backend.prompts_for("content")[0]


def test_retry_recovers_within_turn(tmp_path: Path) -> None:
    backend = FakeBackend(
        role_responses={
            "reason": [ORDER_TEXT],
            "content": [RuntimeError("flaky"), "text"],
            "correct": ['verdict("ok")'],
        }
    )

    result = _run(_three_layer_graph(), TurnStateStore(tmp_path), backend)

    assert result.ok
    assert result.executions[1].attempts == 2
    assert len(set(backend.prompts_for("content"))) == 1


def test_exhausted_retries_fail_turn_and_skip_memory(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    memorize = LayerSpec(name="memorize", role=ROLE_MEMORY, system_prompt="")
    graph = cyclical([_reason(), _content(), memorize])
    backend = FakeBackend(
        role_responses={
            "reason": [ORDER_TEXT],
            "content": [RuntimeError("a"), RuntimeError("b")],
            "memorize": ['remember("alice", "flavor", "vanilla")'],
        }
    )

    result = _run(graph, store, backend)

    assert result.status == TURN_FAILED
    assert result.failure.kind == KIND_TURN_FAILED
    assert result.failure.layer_id == "content"
    assert result.failure.sequence_index == 1
    assert result.records == []
    assert result.text == ""
    logged = store.replay(result.turn_id)
    assert [execution.outcome for execution in logged] == [OUTCOME_SUCCESS, OUTCOME_FAILED]
    assert logged[1].error == "RuntimeError: b"
    assert backend.prompts_for("memorize") == []
    assert store.latest_memory("s1").revision == 0
    assert store.turn_status(result.turn_id)["failure"]["kind"] == KIND_TURN_FAILED


def test_timeout_fails_turn(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    backend = FakeBackend(responses=["late"], delay_s=0.5)
    policy = RetryPolicy(max_attempts=1, timeout_s=0.05, backoff_s=0.0)

    result = _run(cyclical([_content()]), store, backend, policy=policy)

    assert result.status == TURN_FAILED
    assert "TimeoutError" in store.replay(result.turn_id)[0].error


def test_cancel_between_layers_keeps_persisted_work(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    token = CancelToken()

    class CancellingBackend:
        def complete(self, prompt: str, params=None) -> str:
            token.cancel()
            return ORDER_TEXT

    result = _run(_three_layer_graph(), store, CancellingBackend(), cancel=token)

    assert result.status == TURN_CANCELLED
    assert [execution.layer_id for execution in store.replay(result.turn_id)] == ["reason"]
    assert store.turn_status(result.turn_id)["status"] == TURN_CANCELLED
    assert result.records == []


def test_step_limit_stops_looping_graph(tmp_path: Path) -> None:
    graph = PipelineGraph(
        layers=(_content(),),
        start="content",
        routes={"content": Branch(key=first_line(), branches={"done": END}, default="content")},
        max_steps=3,
    )

    result = _run(graph, TurnStateStore(tmp_path), FakeBackend())

    assert result.status == TURN_FAILED
    assert result.failure.kind == KIND_STEP_LIMIT
    assert len(result.executions) == 3


def test_overlapping_turn_is_rejected(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    store.begin_turn("s1")

    with pytest.raises(ConcurrencyViolation):
        _run(_three_layer_graph(), store, FakeBackend())


def test_resume_replays_failed_layer_snapshot(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    graph = _three_layer_graph()
    backend = FakeBackend(
        role_responses={
            "reason": [ORDER_TEXT],
            "content": [RuntimeError("a"), RuntimeError("b")],
        }
    )
    failed = _run(graph, store, backend)
    backend.set_role_responses("content", ["fixed text"])
    backend.set_role_responses("correct", ['verdict("ok")'])

    result = resume_turn(
        graph,
        store,
        backend,
        failed.turn_id,
        1,
        oracle=RandomnessOracle(seed=1),
        policy=POLICY,
        clock=_clock,
    )

    assert result.status == TURN_COMPLETED
    assert result.text == "fixed text"
    assert [execution.sequence_index for execution in result.executions] == [0, 2, 3]
    logged = store.replay(failed.turn_id)
    assert [execution.layer_id for execution in logged] == ["reason", "content", "content", "correct"]
    assert logged[2].input_snapshot == logged[1].input_snapshot
    assert len(set(backend.prompts_for("content"))) == 1
    assert len(backend.prompts_for("reason")) == 1
    manifest = store.turn_status(failed.turn_id)
    assert manifest["status"] == TURN_COMPLETED
    assert manifest["attempts"] == 2


def test_resume_cancelled_turn_routes_from_last_kept_layer(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    token = CancelToken()

    class CancellingBackend:
        def complete(self, prompt: str, params=None) -> str:
            token.cancel()
            return ORDER_TEXT

    cancelled = _run(_three_layer_graph(), store, CancellingBackend(), cancel=token)
    backend = FakeBackend(role_responses={"content": ["text"], "correct": ['verdict("ok")']})

    result = resume_turn(
        _three_layer_graph(),
        store,
        backend,
        cancelled.turn_id,
        1,
        oracle=RandomnessOracle(seed=1),
        policy=POLICY,
        clock=_clock,
    )

    assert result.ok
    assert [execution.layer_id for execution in result.executions] == ["reason", "content", "correct"]
    assert result.records[0].fields["status"] == "x"
    assert 'reason: flavors("a", "b")' in backend.prompts_for("content")[0]


def test_resume_rejects_bad_requests(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    graph = _three_layer_graph()
    backend = FakeBackend(
        role_responses={"reason": [ORDER_TEXT], "content": [RuntimeError("a"), RuntimeError("b")]}
    )
    failed = _run(graph, store, backend)

    with pytest.raises(ValueError):
        resume_turn(graph, store, backend, failed.turn_id, 2, oracle=RandomnessOracle(seed=1))
    with pytest.raises(ValueError):
        resume_turn(graph, store, backend, failed.turn_id, 5, oracle=RandomnessOracle(seed=1))

    done = FakeBackend(
        role_responses={"reason": [ORDER_TEXT], "content": ["t"], "correct": ['verdict("ok")']}
    )
    completed = _run(graph, store, done)
    with pytest.raises(ValueError):
        resume_turn(graph, store, done, completed.turn_id, 0, oracle=RandomnessOracle(seed=1))


def test_replay_reproduces_stored_executions(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    graph = _three_layer_graph()
    responses = {
        "reason": ['flavors("strawberry", "caramel")\nprice(24.99)\nstatus("pending")'],
        "content": ["Two scoops."],
        "correct": ['verdict("ok")'],
    }
    result = _run(graph, store, FakeBackend(role_responses={k: list(v) for k, v in responses.items()}))

    replayed = replay_executions(
        graph,
        store,
        FakeBackend(role_responses={k: list(v) for k, v in responses.items()}),
        result.turn_id,
        clock=_clock,
    )

    assert replayed == store.replay(result.turn_id)


def test_turn_trace_events(tmp_path: Path) -> None:
    tracer = TraceWriter("s1", base_dir=tmp_path / "traces")
    backend = FakeBackend(
        role_responses={"reason": [ORDER_TEXT], "content": ["text"], "correct": ['verdict("ok")']}
    )

    result = _run(_three_layer_graph(), TurnStateStore(tmp_path / "sessions"), backend, tracer=tracer)

    events = [json.loads(line) for line in tracer.path.read_text(encoding="utf-8").splitlines()]
    kinds = [event["kind"] for event in events]
    assert kinds[0] == "turn_start"
    assert kinds[-1] == "turn_done"
    assert kinds.count("layer_done") == 3
    assert kinds.count("route") == 3
    assert {"layer_start", "llm_req", "llm_done"} <= set(kinds)
    assert events[-1]["data"]["turn_id"] == result.turn_id
    assert events[-1]["data"]["layers"] == ["reason", "content", "correct"]


def _gate() -> LayerSpec:
    return LayerSpec(name="gate", role=ROLE_NAVIGATOR, system_prompt="Odds.", output=OUTPUT_CALLS)


def _gated_graph() -> PipelineGraph:
    return PipelineGraph(
        layers=(_gate(), _content()),
        start="gate",
        routes={
            "gate": Chance(threshold_key=field_number("chance"), passed="content", failed=END),
            "content": Fixed(END),
        },
    )


def test_infinite_threshold_takes_failed_route(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    oracle = RandomnessOracle(seed=1)
    backend = FakeBackend(role_responses={"gate": ["chance(1e999)", 'chance("nan")']})

    first = _run(_gated_graph(), store, backend, oracle=oracle)
    second = _run(_gated_graph(), store, backend, oracle=oracle)

    assert first.status == TURN_COMPLETED
    assert second.status == TURN_COMPLETED
    assert [execution.layer_id for execution in first.executions] == ["gate"]
    assert oracle.draws == 0


def test_unexpected_error_fails_turn_and_frees_session(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)

    def exploding(_execution) -> bool:
        raise RuntimeError("boom")

    graph = PipelineGraph(
        layers=(_content(),),
        start="content",
        routes={"content": Hybrid(next=END, trigger=exploding, override=Fixed(END))},
    )

    result = _run(graph, store, FakeBackend(responses=["text"]))

    assert result.status == TURN_FAILED
    assert result.failure.kind == KIND_TURN_FAILED
    assert result.failure.message == "RuntimeError: boom"
    assert result.failure.layer_id == "content"
    assert store.turn_status(result.turn_id)["status"] == TURN_FAILED
    assert [execution.layer_id for execution in store.replay(result.turn_id)] == ["content"]
    follow_up = _run(cyclical([_content()]), store, FakeBackend(responses=["text"]))
    assert follow_up.ok


class _FinishFailsOnce(TurnStateStore):
    def __init__(self, base_dir: Path) -> None:
        super().__init__(base_dir)
        self.failures_left = 1

    def finish_turn(self, turn_id, status, failure=None, *, clock=time.time) -> None:
        if status == TURN_COMPLETED and self.failures_left:
            self.failures_left -= 1
            raise OSError("disk full")
        super().finish_turn(turn_id, status, failure, clock=clock)


def test_memory_of_turn_that_failed_to_finish_is_not_seen(tmp_path: Path) -> None:
    store = _FinishFailsOnce(tmp_path)
    memorize = LayerSpec(name="memorize", role=ROLE_MEMORY, system_prompt="Remember.")
    graph = cyclical([_content(), memorize])
    backend = FakeBackend(
        role_responses={
            "content": ["text", "text"],
            "memorize": ['remember("bob", "likes", "x")', 'remember("bob", "likes", "y")'],
        }
    )

    failed = _run(graph, store, backend)
    second = _run(graph, store, backend)

    assert failed.status == TURN_FAILED
    assert "OSError: disk full" in failed.failure.message
    assert second.ok
    assert backend.prompts_for("content")[1].startswith("Describe.\n\nMEMORY:\n{}")
    assert store.latest_memory("s1").entities == {"bob": {"likes": "y"}}


def test_resume_reruns_memory_layer_of_failed_turn(tmp_path: Path) -> None:
    store = _FinishFailsOnce(tmp_path)
    memorize = LayerSpec(name="memorize", role=ROLE_MEMORY, system_prompt="Remember.")
    graph = cyclical([_content(), memorize])
    backend = FakeBackend(
        role_responses={
            "content": ["text"],
            "memorize": ['remember("bob", "likes", "x")', 'remember("bob", "likes", "z")'],
        }
    )
    failed = _run(graph, store, backend)
    assert store.latest_memory("s1").revision == 0

    result = resume_turn(
        graph, store, backend, failed.turn_id, 1, oracle=RandomnessOracle(seed=1), policy=POLICY
    )

    assert result.ok
    assert store.latest_memory("s1").entities == {"bob": {"likes": "z"}}


def test_resume_rejects_layers_missing_from_graph(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    backend = FakeBackend(
        role_responses={"reason": [ORDER_TEXT], "content": [RuntimeError("a"), RuntimeError("b")]}
    )
    failed = _run(_three_layer_graph(), store, backend)

    with pytest.raises(RoutingUnresolved):
        resume_turn(
            cyclical([_reason()]), store, backend, failed.turn_id, 1, oracle=RandomnessOracle(seed=1)
        )
    assert store.turn_status(failed.turn_id)["status"] == TURN_FAILED


def test_timed_out_attempt_never_overlaps_later_calls(tmp_path: Path) -> None:
    lock = threading.Lock()
    active: list[str] = []
    overlaps: list[list[str]] = []
    calls: list[tuple[str, float | None]] = []

    class SlowFirstBackend:
        def complete(self, prompt: str, params=None) -> str:
            role = params["role"]
            with lock:
                if active:
                    overlaps.append([*active, role])
                active.append(role)
                calls.append((role, params.get("timeout_s")))
                first = len(calls) == 1
            try:
                if first:
                    time.sleep(0.5)
                return ORDER_TEXT if role == "reason" else "text"
            finally:
                with lock:
                    active.remove(role)

    policy = RetryPolicy(max_attempts=2, timeout_s=0.1, backoff_s=0.0)

    graph = cyclical([_reason(), _content()])

    result = _run(graph, TurnStateStore(tmp_path), SlowFirstBackend(), policy=policy)

    assert result.ok
    assert overlaps == []
    assert calls == [("reason", 0.1), ("reason", 0.1), ("content", 0.1)]
    assert result.executions[0].attempts == 2


def test_parallel_sessions_share_store_and_oracle(tmp_path: Path) -> None:
    store = TurnStateStore(tmp_path)
    oracle = RandomnessOracle(seed=3)
    graph = _gated_graph()
    sessions = [f"s{number}" for number in range(8)]
    results: dict[str, list] = {}

    class OddsBackend:
        def complete(self, prompt: str, params=None) -> str:
            return "chance(1000)" if params["role"] == "gate" else "text"

    def worker(session_id: str) -> None:
        results[session_id] = [
            _run(graph, store, OddsBackend(), session_id=session_id, oracle=oracle) for _ in range(3)
        ]

    threads = [threading.Thread(target=worker, args=(session_id,)) for session_id in sessions]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    draw_indexes = []
    for session_id in sessions:
        turns = results[session_id]
        assert [turn.status for turn in turns] == [TURN_COMPLETED] * 3
        assert [turn.turn_id for turn in turns] == [turn_id_for(session_id, index) for index in (1, 2, 3)]
        for turn in turns:
            logged = store.replay(turn.turn_id)
            assert [execution.sequence_index for execution in logged] == [0, 1]
            assert [execution.layer_id for execution in logged] == ["gate", "content"]
            assert {execution.turn_id for execution in logged} == {turn.turn_id}
            draw_indexes.append(logged[1].input_snapshot["oracle"]["index"])
    assert oracle.draws == len(sessions) * 3
    assert sorted(draw_indexes) == list(range(1, len(sessions) * 3 + 1))
