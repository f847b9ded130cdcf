"""Shared utility functions."""

from .atomic_io import atomic_write_json, atomic_write_text
from .rich_logging import ContextLogger, setup_rich_logging

__all__ = [
    "atomic_write_json",
    "atomic_write_text",
    "ContextLogger",
    "setup_rich_logging",
]
