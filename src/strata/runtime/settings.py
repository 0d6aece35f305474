from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    timeout_s: float | None = 60.0
    backoff_s: float = 0.5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


@dataclass(frozen=True, slots=True)
class StrataSettings:
    data_root: Path
    backend: str
    graph_path: Path | None
    max_attempts: int
    invoke_timeout_s: float | None
    retry_backoff_s: float
    oracle_seed: int | None
    admin_token: str | None

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            timeout_s=self.invoke_timeout_s,
            backoff_s=self.retry_backoff_s,
        )


def load_settings() -> StrataSettings:
    graph_raw = os.getenv("STRATA_GRAPH")
    timeout_s = _env_float("STRATA_INVOKE_TIMEOUT_S", 60.0)
    return StrataSettings(
        data_root=Path(os.getenv("DATA_ROOT", "data")),
        backend=os.getenv("STRATA_BACKEND", "fake"),
        graph_path=Path(graph_raw) if graph_raw else None,
        max_attempts=max(1, _env_int("STRATA_MAX_ATTEMPTS", 3) or 1),
        invoke_timeout_s=timeout_s if timeout_s > 0 else None,
        retry_backoff_s=max(0.0, _env_float("STRATA_RETRY_BACKOFF_S", 0.5)),
        oracle_seed=_env_int("STRATA_ORACLE_SEED", None),
        admin_token=os.getenv("STRATA_ADMIN_TOKEN"),
    )
