"""Runtime module for subprocess management.

This module provides isolated process execution that collects a child's
exit code and both output streams without blocking the event loop.
"""

from __future__ import annotations

from .process_runner import ProcessResult, ProcessRunner, ProcessSpec

__all__ = [
    "ProcessResult",
    "ProcessRunner",
    "ProcessSpec",
]
