"""Layered model pipelines over a function-call text grammar."""

__version__ = "0.1.0"
