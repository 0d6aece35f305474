from __future__ import annotations

import json
import logging
import os
import time
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from strata.backends.registry import register_backend

logger = logging.getLogger(__name__)

_DEFAULT_SYSTEM_RULES = (
    "Answer only with what the instructions ask for. When asked for calls, "
    "emit one call per line in the form name(arg, arg)."
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class LlamaServerBackend:
    base_url: str = field(
        default_factory=lambda: os.getenv("LLAMA_SERVER_BASE_URL", "http://127.0.0.1:8080")
    )
    timeout_s: float = field(default_factory=lambda: _env_float("LLAMA_SERVER_TIMEOUT_S", 60.0))
    api_key: str | None = field(default_factory=lambda: os.getenv("LLAMA_SERVER_API_KEY"))
    model: str | None = field(default_factory=lambda: os.getenv("LLAMA_SERVER_MODEL"))
    system_rules: str = _DEFAULT_SYSTEM_RULES

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_payload(self, prompt: str, params: dict[str, Any]) -> dict[str, Any]:
        options = dict(params)
        options.pop("role", None)
        options.pop("timeout_s", None)
        messages = options.pop("messages", None)
        model = options.pop("model", self.model)
        # retries resend the same prompt, so sampling must not drift
        options.setdefault("temperature", 0)
        options.setdefault("top_p", 1)
        options.setdefault("max_tokens", 512)
        options.setdefault("seed", 7)
        if messages is None:
            messages = [
                {"role": "system", "content": self.system_rules},
                {"role": "user", "content": prompt},
            ]
        payload: dict[str, Any] = {"messages": messages}
        if model:
            payload["model"] = model
        payload.update(options)
        return payload

    @staticmethod
    def _extract_content(data: dict[str, Any]) -> str:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        first = choices[0]
        if isinstance(first, dict):
            message = first.get("message")
            if isinstance(message, dict):
                content = message.get("content")
                if isinstance(content, str):
                    return content
            text = first.get("text")
            if isinstance(text, str):
                return text
        return ""

    def complete(self, prompt: str, params: dict[str, Any] | None = None) -> str:
        params = params or {}
        payload = self._build_payload(prompt, params)
        url = f"{self.base_url.rstrip('/')}/v1/chat/completions"
        if _env_bool("STRATA_LLAMA_LOG_PAYLOAD"):
            logger.info("llama request payload:\n%s", json.dumps(payload, indent=2))
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(url, data=data, headers=self._headers(), method="POST")
        timeout_s = float(params.get("timeout_s") or self.timeout_s)
        start = time.monotonic()
        with urllib.request.urlopen(request, timeout=timeout_s) as response:
            body = response.read().decode("utf-8")
        logger.debug(
            "llama completion for %s took %d ms",
            params.get("role", "?"),
            int((time.monotonic() - start) * 1000),
        )
        return self._extract_content(json.loads(body))


register_backend("llama", LlamaServerBackend)
