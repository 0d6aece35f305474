from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol


class Backend(Protocol):
    """Model invocation boundary: one prompt in, raw text out.

    ``params["role"]`` carries the invoking layer's name. Implementations
    must tolerate being called again with an identical prompt.
    """

    def complete(self, prompt: str, params: dict[str, Any] | None = None) -> str:
        ...


_BACKENDS: dict[str, Callable[..., Backend]] = {}


def register_backend(name: str, factory: Callable[..., Backend], *, replace: bool = False) -> None:
    key = name.lower()
    if key in _BACKENDS and not replace:
        raise ValueError(f"Backend '{name}' is already registered")
    _BACKENDS[key] = factory


def get_backend(name: str, **kwargs: Any) -> Backend:
    factory = _BACKENDS.get(name.lower())
    if factory is None:
        available = ", ".join(list_backends())
        raise ValueError(f"Unknown backend '{name}'. Available backends: {available}")
    return factory(**kwargs)


def list_backends() -> list[str]:
    return sorted(_BACKENDS)
