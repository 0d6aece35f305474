from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Union

from strata.backends.registry import register_backend

Scripted = Union[str, BaseException]


@dataclass(slots=True)
class FakeBackend:
    """Scripted backend for tests and demos.

    Responses are consumed per layer name first, then from the shared queue.
    A queued exception is raised instead of returned, which is how tests
    simulate invocation failures. ``delay_s`` sleeps before answering.
    """

    responses: List[Scripted] = field(default_factory=list)
    role_responses: dict[str, List[Scripted]] = field(default_factory=dict)
    calls: List[dict[str, Any]] = field(default_factory=list)
    delay_s: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def complete(self, prompt: str, params: dict[str, Any] | None = None) -> str:
        payload = {"prompt": prompt, "params": dict(params or {})}
        with self._lock:
            self.calls.append(payload)
            role = payload["params"].get("role")
            if role and self.role_responses.get(role):
                response: Scripted | None = self.role_responses[role].pop(0)
            elif self.responses:
                response = self.responses.pop(0)
            else:
                response = None
        if self.delay_s > 0:
            time.sleep(self.delay_s)
        if isinstance(response, BaseException):
            raise response
        return response or ""

    def extend_responses(self, responses: Iterable[Scripted]) -> None:
        self.responses.extend(responses)

    def set_responses(self, responses: Iterable[Scripted]) -> None:
        self.responses = list(responses)

    def extend_role_responses(self, role: str, responses: Iterable[Scripted]) -> None:
        self.role_responses.setdefault(role, []).extend(responses)

    def set_role_responses(self, role: str, responses: Iterable[Scripted]) -> None:
        self.role_responses[role] = list(responses)

    def prompts_for(self, role: str) -> list[str]:
        return [call["prompt"] for call in self.calls if call["params"].get("role") == role]


def _load_env_json_list(env_value: str) -> list[str]:
    data = json.loads(env_value)
    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise ValueError("fake responses must be a JSON list of strings")
    return data


def _load_env_json_role_map(env_value: str) -> dict[str, list[str]]:
    data = json.loads(env_value)
    if not isinstance(data, dict):
        raise ValueError("fake role responses must be a JSON object")
    role_responses: dict[str, list[str]] = {}
    for role, responses in data.items():
        if not isinstance(responses, list) or not all(isinstance(item, str) for item in responses):
            raise ValueError("fake role responses must map layer -> list[str]")
        role_responses[role] = list(responses)
    return role_responses


def _factory(**_kwargs: Any) -> "FakeBackend":
    backend = FakeBackend()
    responses_json = os.getenv("STRATA_FAKE_RESPONSES")
    if responses_json:
        backend.responses = list(_load_env_json_list(responses_json))
    role_responses_json = os.getenv("STRATA_FAKE_ROLE_RESPONSES")
    if role_responses_json:
        backend.role_responses = dict(_load_env_json_role_map(role_responses_json))
    return backend


register_backend("fake", _factory)
