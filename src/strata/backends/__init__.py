"""Backend implementations."""

from .fake import FakeBackend
from .llama_server import LlamaServerBackend
from .registry import Backend, get_backend, list_backends, register_backend

__all__ = [
    "Backend",
    "FakeBackend",
    "LlamaServerBackend",
    "get_backend",
    "list_backends",
    "register_backend",
]
