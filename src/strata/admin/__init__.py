"""Admin HTTP surface for inspecting and running turns."""

from .app import create_app

__all__ = ["create_app"]
