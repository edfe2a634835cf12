"""Processors that ship with the core."""

from nodeflow.processors.builtin import (
    DataInputProcessor,
    DataOutputProcessor,
    PassthroughProcessor,
    register_builtin_processors,
)

__all__ = [
    "DataInputProcessor",
    "DataOutputProcessor",
    "PassthroughProcessor",
    "register_builtin_processors",
]
