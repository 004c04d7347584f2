# src/tidemark/engine/__init__.py
"""Tidemark engine: safe-range resolution, execution and lifecycle.

This module provides:
- PipelineManager: create / execute / reset / drop, ownership checks, scheduling
- PipelineExecutor: resolve-run-advance units of work in single transactions
- Resolvers: sequence ranges, time windows and unprocessed file lists

Example:
    from tidemark.core.store import PipelineDB
    from tidemark.engine import PipelineManager

    db = PipelineDB.from_url("sqlite:///tidemark.db")
    manager = PipelineManager(db)
    outcome = manager.execute_pipeline("event-rollup")
"""

from tidemark.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from tidemark.engine.executor import PipelineExecutor
from tidemark.engine.manager import DEFAULT_MIN_DELAY, PipelineManager
from tidemark.engine.resolvers import (
    FileList,
    FileListResolver,
    SequenceRangeResolver,
    TimeIntervalResolver,
)

__all__ = [
    "DEFAULT_CLOCK",
    "DEFAULT_MIN_DELAY",
    "Clock",
    "FileList",
    "FileListResolver",
    "MockClock",
    "PipelineExecutor",
    "PipelineManager",
    "SequenceRangeResolver",
    "SystemClock",
    "TimeIntervalResolver",
]
